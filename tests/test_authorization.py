"""
tests/test_authorization.py -- Header parsing and the any-of permission check.

Covers:
  - missing header, malformed header, invalid token -> 401 with a reason
  - refresh tokens are not accepted as access tokens
  - any-of semantics for required permissions -> otherwise 403
  - authorize_optional() never raises
"""

from __future__ import annotations

import time

import pytest

from auth.authorization import AuthContext, authorize, authorize_optional
from auth.tokens import REFRESH_TOKEN, TokenService
from core.errors import AppError, ErrorKind


def _bearer(tokens: TokenService, permissions: list[str], **kwargs) -> str:
    return "Bearer " + tokens.sign(12, "testserver", 60, roles=["user"], permissions=permissions, **kwargs)


def _reject(tokens: TokenService, header, required=()) -> AppError:
    with pytest.raises(AppError) as exc_info:
        authorize(tokens, header, required)
    return exc_info.value


class TestAuthenticate:
    def test_missing_header(self, token_service: TokenService) -> None:
        err = _reject(token_service, None)
        assert err.kind is ErrorKind.UNAUTHORIZED
        assert err.errors[0].message == "Authorization header is required"

    @pytest.mark.parametrize("header", ["Token abc", "Bearer", "Bearer ", "Bearer a b", "bearer abc"])
    def test_malformed_header(self, token_service: TokenService, header: str) -> None:
        err = _reject(token_service, header)
        assert err.kind is ErrorKind.UNAUTHORIZED
        assert err.errors[0].message == "Invalid authorization header format"

    def test_invalid_token(self, token_service: TokenService) -> None:
        err = _reject(token_service, "Bearer not-a-token")
        assert err.kind is ErrorKind.UNAUTHORIZED

    def test_expired_token_reason(self, token_service: TokenService) -> None:
        header = _bearer(token_service, ["user:me"], now=int(time.time()) - 1000)
        err = _reject(token_service, header)
        assert err.errors[0].message == "Token has expired"

    def test_refresh_token_rejected(self, token_service: TokenService) -> None:
        err = _reject(token_service, _bearer(token_service, ["user:me"], token_type=REFRESH_TOKEN))
        assert err.kind is ErrorKind.UNAUTHORIZED

    def test_valid_token_context(self, token_service: TokenService) -> None:
        context = authorize(token_service, _bearer(token_service, ["user:me", "user:read"]))
        assert context == AuthContext(user_id=12, roles=["user"], permissions=["user:me", "user:read"])


class TestPermissionCheck:
    def test_any_of_passes_with_one_match(self, token_service: TokenService) -> None:
        header = _bearer(token_service, ["role:update"])
        context = authorize(token_service, header, ["role:create", "role:update"])
        assert context.user_id == 12

    def test_no_match_is_forbidden(self, token_service: TokenService) -> None:
        err = _reject(token_service, _bearer(token_service, ["user:me"]), ["role:create"])
        assert err.kind is ErrorKind.FORBIDDEN
        assert err.status_code == 403
        assert err.errors[0].message == "Insufficient permissions"

    def test_empty_token_permissions_forbidden(self, token_service: TokenService) -> None:
        err = _reject(token_service, _bearer(token_service, []), ["user:me"])
        assert err.kind is ErrorKind.FORBIDDEN

    def test_no_requirement_admits_any_valid_token(self, token_service: TokenService) -> None:
        assert authorize(token_service, _bearer(token_service, []), ()).permissions == []


class TestOptional:
    def test_missing_header_is_none(self, token_service: TokenService) -> None:
        assert authorize_optional(token_service, None) is None

    def test_invalid_token_is_none(self, token_service: TokenService) -> None:
        assert authorize_optional(token_service, "Bearer garbage") is None

    def test_valid_token_yields_context(self, token_service: TokenService) -> None:
        context = authorize_optional(token_service, _bearer(token_service, ["user:me"]))
        assert context is not None
        assert context.permissions == ["user:me"]
