"""
api/routes/v1/auth.py -- Registration, login, token refresh, logout, me.

Routes:
  POST /api/v1/auth/register   -- create a user holding the default role; 201
  POST /api/v1/auth/login      -- email + password -> access/refresh pair
  POST /api/v1/auth/refresh    -- rotate the pair (old refresh token dies)
  POST /api/v1/auth/logout     -- delete the stored refresh token (auth required)
  GET  /api/v1/auth/me         -- current user + token snapshot (user:me)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Token responses carry Cache-Control: no-store.
  The token issuer is the request Host header.

Handlers are sync: FastAPI runs them in its threadpool, so bcrypt, SQL and
Redis calls block only the worker thread serving the request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
    UserEnvelope,
    UserResponse,
)
from auth.authorization import AuthContext
from auth.dependencies import require_permissions
from auth.service import AuthService, TokenPair

# Auth policy:
# - POST /api/v1/auth/register:  public
# - POST /api/v1/auth/login:     public, rate limited
# - POST /api/v1/auth/refresh:   public -- the refresh token is the credential
# - POST /api/v1/auth/logout:    any valid access token
# - GET  /api/v1/auth/me:        user:me
router = APIRouter()


def _auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/register", response_model=UserEnvelope, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserEnvelope:
    """Create an account. The new user gets the default role atomically."""
    user = _auth_service(request).register(body.username, body.email, body.password)
    return UserEnvelope(data=UserResponse.from_user(user))


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Exchange credentials for a token pair.

    Unknown email and wrong password produce the same 401 in the same time.
    """
    pair = _auth_service(request).login(body.email, body.password, issuer=request.headers.get("host", ""))
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate the token pair. Roles and permissions are re-resolved."""
    pair = _auth_service(request).refresh(body.refresh_token)
    return _token_response(pair)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, auth: AuthContext = Depends(require_permissions())) -> MessageResponse:
    """Delete the caller's refresh token. The access token lives until it expires."""
    _auth_service(request).logout(auth.user_id)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, auth: AuthContext = Depends(require_permissions("user:me"))) -> MeResponse:
    """Return the current user and the roles/permissions held by the token."""
    user = _auth_service(request).me(auth.user_id)
    return MeResponse(data=UserResponse.from_user(user), roles=auth.roles, permissions=auth.permissions)
