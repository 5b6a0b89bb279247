"""
auth/tokens.py -- JWT signing/verification and password hashing.

Security design decisions:
  JWT: PyJWT with an asymmetric key. The algorithm comes from the key itself
       (auth/keys.py); verify() pins that single algorithm and rejects any
       token whose header declares another one before doing crypto work, so
       "alg" confusion attacks (none, HS256-with-public-key) are impossible.
       Claims: sub (user id as string), iss (request host), iat, exp, roles,
       permissions, typ ("access" | "refresh") and jti.

  Failure classes: verify() raises one TokenError subclass per failure mode
       (MalformedToken, AlgorithmMismatch, InvalidSignature, TokenExpired).
       Route/middleware code turns any of them into a 401 with the reason.

  parse_unverified(): decodes claims without checking anything. It exists only
       to tell a garbage token apart from a well-formed-but-rejected one when
       building an error message. Never feed its output to an access decision.

  Passwords: bcrypt directly (no passlib wrapper). check_credentials() always
       runs bcrypt -- against a dummy hash when the account is unknown -- so
       response time does not reveal whether an email is registered.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt
import jwt

from auth.keys import SigningMaterial
from core.errors import internal_error

if TYPE_CHECKING:
    from rbac.models import User

logger = logging.getLogger("gatekeeper.auth")

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

_REQUIRED_CLAIMS = ["sub", "iat", "exp"]


# ---------------------------------------------------------------------------
# Token errors
# ---------------------------------------------------------------------------


class TokenError(Exception):
    """Base class for every verification failure. `reason` is client-safe."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MalformedToken(TokenError):
    pass


class AlgorithmMismatch(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    pass


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Signs and verifies bearer tokens with one key pair and one algorithm.

    Usage:
        service = TokenService(load_signing_material("keys/jwt.pem"))
        token = service.sign(42, "api.example.com", 900, roles=["user"], permissions=["user:me"])
        claims = service.verify(token)
    """

    def __init__(self, material: SigningMaterial, leeway_seconds: int = 0) -> None:
        self._material = material
        self._leeway = leeway_seconds

    @property
    def algorithm(self) -> str:
        return self._material.algorithm

    def sign(
        self,
        subject: int | str,
        issuer: str,
        ttl_seconds: int,
        *,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
        token_type: str = ACCESS_TOKEN,
        token_id: str | None = None,
        now: int | None = None,
    ) -> str:
        """Return a signed JWT whose exp is iat + ttl_seconds.

        Claims are a pure function of the arguments: pass `now` and
        `token_id` explicitly to get reproducible output.

        Raises AppError(INTERNAL) if the signing backend fails.
        """
        issued_at = int(time.time()) if now is None else int(now)
        claims: dict = {
            "sub": str(subject),
            "iss": issuer,
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
            "roles": list(roles),
            "permissions": list(permissions),
            "typ": token_type,
        }
        if token_id is not None:
            claims["jti"] = token_id
        try:
            return jwt.encode(claims, self._material.private_key, algorithm=self._material.algorithm)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            logger.error("Token signing failed: %s", exc)
            raise internal_error(str(exc), title="Failed to sign json web token") from exc

    def verify(self, token: str) -> dict:
        """Verify signature, algorithm and expiry. Return the decoded claims.

        Order of checks: structure -> declared algorithm -> signature -> expiry.
        A token that is both forged and expired reports InvalidSignature.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise MalformedToken(f"Invalid token format: {exc}") from exc

        declared = header.get("alg")
        if declared != self._material.algorithm:
            raise AlgorithmMismatch(
                f"Token algorithm {declared!r} does not match the configured algorithm "
                f"{self._material.algorithm!r}"
            )

        try:
            return jwt.decode(
                token,
                self._material.public_key,
                algorithms=[self._material.algorithm],
                leeway=self._leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("Token has expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignature("Signature verification failed") from exc
        except jwt.PyJWTError as exc:
            raise MalformedToken(f"Invalid token: {exc}") from exc

    def parse_unverified(self, token: str) -> dict:
        """Decode claims WITHOUT verification. For error classification only."""
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            raise MalformedToken(f"Invalid token format: {exc}") from exc


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only accepts 72 bytes of input. rbac.service.UserService rejects
    longer passwords with BAD_REQUEST before they reach this function.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=8)
def _dummy_hash(rounds: int) -> str:
    # One dummy per cost factor so the fake check costs the same as a real one.
    return hash_password("gatekeeper_timing_dummy", rounds)


def check_credentials(user: User | None, password: str, rounds: int = 12) -> bool:
    """Constant-work credential check.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against a dummy hash of the same cost
    - Wrong password: bcrypt runs against the real hash
    """
    if user is None or not user.hashed_password:
        verify_password(password, _dummy_hash(rounds))
        return False
    return verify_password(password, user.hashed_password)
