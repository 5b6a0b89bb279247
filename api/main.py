"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Exposes the authentication / RBAC core over HTTP.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
     (the Host header becomes the token issuer, so it must be trusted)
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the Resources bundle (engine, cache, signing key) once,
wires repositories and services onto app.state, seeds the default roles,
and releases everything on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorRecord, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.keys import generate_signing_material, load_signing_material
from auth.permissions import PermissionResolver
from auth.refresh_store import RefreshTokenStore
from auth.service import AuthService
from auth.tokens import TokenService
from cache.store import CacheStore, EntityCache
from core.config import Settings, get_settings
from core.errors import AppError
from core.resources import Resources
from rbac.models import Permission, Role, RolePermission, User, UserRole
from rbac.seed import seed_defaults
from rbac.service import UserService
from rbac.store import (
    PermissionRepository,
    RolePermissionRepository,
    RoleRepository,
    UserRepository,
    UserRoleRepository,
    create_db_engine,
)
from rbac.transactions import TxManager

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_resources(settings: Settings) -> Resources:
    """Create the engine, cache connection and token service from settings."""
    if settings.jwt_private_key_path:
        material = load_signing_material(settings.jwt_private_key_path)
    else:
        material = generate_signing_material()
    return Resources(
        settings=settings,
        engine=create_db_engine(settings.database_url),
        cache=CacheStore.from_url(settings.redis_url),
        token_service=TokenService(material, leeway_seconds=settings.jwt_leeway_seconds),
    )


def init_app_state(app: FastAPI, resources: Resources) -> None:
    """Wire repositories and services onto app.state.

    Shared by the real lifespan and the test fixtures so both run the exact
    same object graph.
    """
    settings = resources.settings

    def entity_cache(entity: str, cls: type) -> EntityCache:
        return EntityCache(
            resources.cache,
            entity,
            cls,
            ttl=settings.cache_ttl_seconds,
            list_ttl=settings.cache_list_ttl_seconds,
            jitter=settings.cache_jitter_seconds,
        )

    engine = resources.engine
    users = UserRepository(engine, entity_cache("user", User))
    roles = RoleRepository(engine, entity_cache("role", Role))
    permissions = PermissionRepository(engine, entity_cache("permission", Permission))
    user_roles = UserRoleRepository(engine, entity_cache("user_role", UserRole))
    role_permissions = RolePermissionRepository(engine, entity_cache("role_permission", RolePermission))

    if settings.seed_on_startup:
        seed_defaults(roles, permissions, role_permissions)

    user_service = UserService(
        TxManager(engine),
        users,
        roles,
        user_roles,
        default_role=settings.default_role,
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    auth_service = AuthService(
        resources.token_service,
        RefreshTokenStore(resources.cache.client),
        PermissionResolver(user_roles, roles, role_permissions, permissions),
        users,
        user_service,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        bcrypt_rounds=settings.bcrypt_rounds,
        revoke_on_reuse=settings.revoke_on_refresh_reuse,
    )

    app.state.resources = resources
    app.state.token_service = resources.token_service
    app.state.users = users
    app.state.roles = roles
    app.state.permissions = permissions
    app.state.user_roles = user_roles
    app.state.role_permissions = role_permissions
    app.state.user_service = user_service
    app.state.auth_service = auth_service


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build resources on startup, release them on shutdown.

    A bad signing key or unreachable database fails here, before the server
    accepts a single request. An unreachable Redis does not: the entity
    cache degrades to always-miss and refresh operations report 500.
    """
    logger.info("Gatekeeper API starting up")
    resources = build_resources(get_settings())
    init_app_state(app, resources)
    logger.info(
        "Gatekeeper ready (algorithm=%s, cache=%s)",
        resources.token_service.algorithm,
        "redis" if resources.cache.available else "disabled",
    )

    yield

    resources.close()
    logger.info("Gatekeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatekeeper API",
    description="Token issuance, refresh-token rotation and role-based access control.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, title: str, message: str, source: str = "api") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            errors=[ErrorRecord(code=status_code, source=source, title=title, message=message)]
        ).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError. The first record decides the HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(errors=[ErrorRecord(**e.to_dict()) for e in exc.errors]).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "Too Many Requests", f"Rate limit exceeded: {exc.detail}")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one record per failed field."""
    errors = [
        ErrorRecord(
            code=400,
            source="api.request",
            title="Bad Request",
            message=f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}",
        )
        for err in exc.errors()
    ] or [ErrorRecord(code=400, source="api.request", title="Bad Request", message="Request validation failed")]
    return JSONResponse(status_code=400, content=ErrorResponse(errors=errors).model_dump())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap FastAPI/Starlette HTTP exceptions (404 route, 405 method) in the envelope."""
    return _error_response(exc.status_code, f"HTTP {exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "Internal Server Error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness plus database and cache reachability."""
    resources: Resources = request.app.state.resources
    components = {"app": "ok"}

    try:
        with resources.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        components["database"] = "error"

    if not resources.cache.available:
        components["cache"] = "disabled"
    else:
        components["cache"] = "ok" if resources.cache.ping() else "error"

    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
