"""
auth/dependencies.py -- FastAPI Depends() helpers for authorization.

require_permissions(*perms) builds a dependency that runs the full check
(header -> token -> any-of permissions) and raises AppError on failure;
the app-level handler renders it as the standard error envelope.
optional_auth is the soft variant: it never rejects and yields None for
anonymous or invalid requests.

Both store the result on request.state.auth so downstream code (and the
request logger) can see who is calling without re-verifying.

Layer rule: no imports from web/ or api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.authorization import AuthContext, authorize, authorize_optional


def require_permissions(*permissions: str) -> Callable[[Request], AuthContext]:
    """Require a valid access token holding ANY of the given permissions.

    With no arguments, any authenticated caller passes.

    Use as a FastAPI dependency:
        @router.post("/roles")
        def create_role(auth: AuthContext = Depends(require_permissions("role:create"))): ...
    """

    def dependency(request: Request) -> AuthContext:
        context = authorize(
            request.app.state.token_service,
            request.headers.get("Authorization"),
            permissions,
        )
        request.state.auth = context
        return context

    return dependency


def optional_auth(request: Request) -> AuthContext | None:
    """Attach the caller's context when a valid token is present. Never raises."""
    context = authorize_optional(request.app.state.token_service, request.headers.get("Authorization"))
    request.state.auth = context
    return context
