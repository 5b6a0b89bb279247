"""
auth/service.py -- Login, refresh-token rotation, registration, logout, me.

Token flow:
  login    credentials -> resolve permissions -> sign access + refresh
           -> store refresh (overwriting any previous one)
  refresh  verify refresh token -> compare with stored value -> load user
           -> resolve permissions AFRESH -> sign a new pair -> store it
  logout   delete the stored refresh token

Both tokens of a pair carry the same roles/permissions snapshot. A role
change only reaches a client on its next refresh; the permissions inside the
presented refresh token are never copied forward.

Reuse detection: the refresh slot holds exactly one token per user, so a
token that was already exchanged no longer matches the stored one and is
rejected. With revoke_on_reuse=True the stored token is deleted as well,
which forces whoever holds the current token to log in again.

Every failure is raised as core.errors.AppError.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from auth.permissions import PermissionResolver
from auth.refresh_store import RefreshTokenStore
from auth.tokens import ACCESS_TOKEN, REFRESH_TOKEN, TokenError, TokenService, check_credentials
from core.errors import AppError, ErrorKind, unauthorized
from rbac.models import User
from rbac.service import UserService, validate_email
from rbac.store import UserRepository

logger = logging.getLogger("gatekeeper.auth")


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


class AuthService:
    """Usage:
    auth = AuthService(tokens, refresh_store, resolver, users, user_service)
    pair = auth.login("a@x.com", "secret123", issuer="api.example.com")
    pair = auth.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        tokens: TokenService,
        refresh_store: RefreshTokenStore,
        resolver: PermissionResolver,
        users: UserRepository,
        user_service: UserService,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        bcrypt_rounds: int = 12,
        revoke_on_reuse: bool = False,
    ) -> None:
        self._tokens = tokens
        self._refresh_store = refresh_store
        self._resolver = resolver
        self._users = users
        self._user_service = user_service
        self._access_ttl = access_ttl_seconds
        self._refresh_ttl = refresh_ttl_seconds
        self._rounds = bcrypt_rounds
        self._revoke_on_reuse = revoke_on_reuse

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, issuer: str) -> TokenPair:
        validate_email(email)
        user = self._users.get_credentials(email)
        # check_credentials runs bcrypt even for an unknown email so both
        # failure modes take the same time and return the same message.
        if not check_credentials(user, password, self._rounds):
            logger.info("Failed login attempt for %s", email)
            raise unauthorized("Invalid credentials")
        pair = self._issue(user.id, issuer)
        logger.info("User id=%s logged in", user.id)
        return pair

    def refresh(self, refresh_token: str) -> TokenPair:
        claims = self._verify_refresh(refresh_token)

        try:
            user_id = int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            raise unauthorized("Invalid user ID in token") from None

        stored = self._refresh_store.get(user_id)
        if stored != refresh_token:
            logger.warning("Refresh token mismatch for user id=%s (possible reuse)", user_id)
            if self._revoke_on_reuse:
                self._refresh_store.delete(user_id)
            raise unauthorized("Refresh token mismatch (Reuse detected?)")

        try:
            user = self._users.get(user_id)
        except AppError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                raise unauthorized("User no longer exists") from exc
            raise

        return self._issue(user.id, claims.get("iss", ""))

    def register(self, username: str, email: str, password: str) -> User:
        return self._user_service.create_user(username, email, password)

    def logout(self, user_id: int) -> None:
        self._refresh_store.delete(user_id)
        logger.info("User id=%s logged out", user_id)

    def me(self, user_id: int) -> User:
        return self._users.get(user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _verify_refresh(self, token: str) -> dict:
        try:
            claims = self._tokens.verify(token)
        except TokenError as exc:
            # Distinguish garbage from a well-formed token that failed a
            # check, for a more useful message. Never used for access.
            try:
                self._tokens.parse_unverified(token)
            except TokenError:
                raise unauthorized("Invalid token format") from exc
            raise unauthorized(f"Invalid token: {exc.reason}") from exc
        if claims.get("typ") != REFRESH_TOKEN:
            raise unauthorized("Invalid token: not a refresh token")
        return claims

    def _issue(self, user_id: int, issuer: str) -> TokenPair:
        access = self._resolver.resolve(user_id)
        access_token = self._tokens.sign(
            user_id,
            issuer,
            self._access_ttl,
            roles=access.roles,
            permissions=access.permissions,
            token_type=ACCESS_TOKEN,
            token_id=uuid.uuid4().hex,
        )
        refresh_token = self._tokens.sign(
            user_id,
            issuer,
            self._refresh_ttl,
            roles=access.roles,
            permissions=access.permissions,
            token_type=REFRESH_TOKEN,
            token_id=uuid.uuid4().hex,
        )
        self._refresh_store.save(user_id, refresh_token, self._refresh_ttl)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)
