"""
tests/conftest.py -- Shared test fixtures for Gatekeeper.

This module provides:
  - signing_material / token_service: one ephemeral P-256 key per session
  - redis_client / cache_store: an isolated fakeredis server per test
  - engine: a fresh SQLite file database per test (tmp_path)
  - stack: repositories + services wired exactly as api/main.py wires them,
    with the default roles seeded
  - _patch_lifespan(): replaces the real lifespan so the app runs on test
    resources instead of REDIS_URL / DATABASE_URL
  - api_client: TestClient plus an admin access token for HTTP tests

Design: each FakeRedis gets its own FakeServer. FakeRedis instances created
without one share a server per host/port, which would leak refresh tokens
and cache entries between tests.

The environment must be set before any core/api import so get_settings()
runs in dev mode (no key file needed), with fast bcrypt and a login rate
limit the test suite cannot trip.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: set before any core/api import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import fakeredis
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from api.main import app, init_app_state
from auth.keys import SigningMaterial, material_from_private_key
from auth.permissions import PermissionResolver
from auth.refresh_store import RefreshTokenStore
from auth.service import AuthService
from auth.tokens import TokenService
from cache.store import CacheStore, EntityCache
from core.config import get_settings
from core.resources import Resources
from rbac.models import Permission, Role, RolePermission, User, UserRole
from rbac.seed import ADMIN_ROLE, seed_defaults
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

TEST_ROUNDS = 4


# ---------------------------------------------------------------------------
# Keys and tokens
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def signing_material() -> SigningMaterial:
    return material_from_private_key(ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(scope="session")
def token_service(signing_material: SigningMaterial) -> TokenService:
    return TokenService(signing_material)


# ---------------------------------------------------------------------------
# Cache and database
# ---------------------------------------------------------------------------


def make_redis() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return make_redis()


@pytest.fixture
def cache_store(redis_client: fakeredis.FakeRedis) -> CacheStore:
    return CacheStore(redis_client)


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'gatekeeper_test.db'}")
    yield eng
    eng.dispose()


# ---------------------------------------------------------------------------
# Wired service stack
# ---------------------------------------------------------------------------


def build_stack(
    engine,
    cache: CacheStore,
    tokens: TokenService,
    default_role: str = "user",
    revoke_on_reuse: bool = False,
    seed: bool = True,
) -> SimpleNamespace:
    """Build repositories and services the same way api.main.init_app_state does."""
    users = UserRepository(engine, EntityCache(cache, "user", User))
    roles = RoleRepository(engine, EntityCache(cache, "role", Role))
    permissions = PermissionRepository(engine, EntityCache(cache, "permission", Permission))
    user_roles = UserRoleRepository(engine, EntityCache(cache, "user_role", UserRole))
    role_permissions = RolePermissionRepository(engine, EntityCache(cache, "role_permission", RolePermission))
    if seed:
        seed_defaults(roles, permissions, role_permissions)

    tx_manager = TxManager(engine)
    user_service = UserService(
        tx_manager, users, roles, user_roles, default_role=default_role, bcrypt_rounds=TEST_ROUNDS
    )
    resolver = PermissionResolver(user_roles, roles, role_permissions, permissions)
    refresh_store = RefreshTokenStore(cache.client)
    auth_service = AuthService(
        tokens,
        refresh_store,
        resolver,
        users,
        user_service,
        bcrypt_rounds=TEST_ROUNDS,
        revoke_on_reuse=revoke_on_reuse,
    )
    return SimpleNamespace(
        users=users,
        roles=roles,
        permissions=permissions,
        user_roles=user_roles,
        role_permissions=role_permissions,
        tx_manager=tx_manager,
        user_service=user_service,
        resolver=resolver,
        refresh_store=refresh_store,
        auth_service=auth_service,
        tokens=tokens,
        cache=cache,
    )


@pytest.fixture
def stack(engine, cache_store: CacheStore, token_service: TokenService) -> SimpleNamespace:
    return build_stack(engine, cache_store, token_service)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def _patch_lifespan(resources: Resources):
    """Return an async context manager that replaces the real lifespan.

    Runs the production wiring (init_app_state) on test resources, so routes
    see the fakeredis cache and the temporary database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, resources)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory, token_service: TokenService) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_access_token, admin_user_id) for HTTP tests.

    The admin is registered through the normal service (so it also holds the
    default role) and then additionally assigned the admin role.
    """
    db_path = tmp_path_factory.mktemp("api") / "gatekeeper_api.db"
    resources = Resources(
        settings=get_settings(),
        engine=create_db_engine(f"sqlite:///{db_path}"),
        cache=CacheStore(make_redis()),
        token_service=token_service,
    )
    app.router.lifespan_context = _patch_lifespan(resources)

    with TestClient(app, raise_server_exceptions=True) as client:
        state = client.app.state
        admin = state.user_service.create_user("testadmin", "admin@example.com", "testpass123")
        state.user_roles.create(UserRole(user_id=admin.id, role_id=state.roles.get_by_name(ADMIN_ROLE).id))
        pair = state.auth_service.login("admin@example.com", "testpass123", issuer="testserver")
        yield client, pair.access_token, admin.id

    resources.engine.dispose()
