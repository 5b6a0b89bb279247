"""
auth/authorization.py -- Turn an Authorization header into an access decision.

Header states and outcomes:

  no header                      401 "Authorization header is required"
  not exactly "Bearer <token>"   401 "Invalid authorization header format"
  token fails verification       401 with the verification reason
  token is not an access token   401 (refresh tokens cannot call APIs)
  token valid                    AuthContext(user_id, roles, permissions)

Permission check is ANY-OF: a route requiring {"role:create", "role:update"}
admits a token holding either one. No required permissions means any valid
token passes. A valid token lacking every required permission is 403.

The decision uses only the claims inside the token. Permission changes made
after issuance apply once the client refreshes.

This module is framework-agnostic; auth/dependencies.py adapts it to FastAPI.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from auth.tokens import ACCESS_TOKEN, TokenError, TokenService
from core.errors import AppError, forbidden, unauthorized

logger = logging.getLogger("gatekeeper.auth")


@dataclass
class AuthContext:
    """What a verified access token says about its bearer."""

    user_id: int
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)

    def has_any(self, required: Iterable[str]) -> bool:
        held = set(self.permissions)
        return any(p in held for p in required)


def _bearer_token(header: str | None) -> str:
    if not header:
        raise unauthorized("Authorization header is required")
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise unauthorized("Invalid authorization header format")
    return parts[1]


def authenticate(tokens: TokenService, header: str | None) -> AuthContext:
    """Verify the bearer access token and build its AuthContext. Raises 401."""
    token = _bearer_token(header)
    try:
        claims = tokens.verify(token)
    except TokenError as exc:
        raise unauthorized(exc.reason) from exc

    if claims.get("typ", ACCESS_TOKEN) != ACCESS_TOKEN:
        raise unauthorized("Invalid token: not an access token")
    try:
        user_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise unauthorized("Invalid user ID in token") from None

    return AuthContext(
        user_id=user_id,
        roles=list(claims.get("roles") or []),
        permissions=list(claims.get("permissions") or []),
    )


def authorize(tokens: TokenService, header: str | None, required: Iterable[str] = ()) -> AuthContext:
    """authenticate() plus the any-of permission check. Raises 401 or 403."""
    context = authenticate(tokens, header)
    required = list(required)
    if required and not context.has_any(required):
        logger.info("User id=%s denied: needs any of %s", context.user_id, required)
        raise forbidden("Insufficient permissions")
    return context


def authorize_optional(tokens: TokenService, header: str | None) -> AuthContext | None:
    """Return the context for a valid token, None otherwise. Never raises."""
    try:
        return authenticate(tokens, header)
    except AppError:
        return None
