"""
rbac/store.py -- SQLAlchemy Core persistence for users and the RBAC graph.

Pattern: Repository + Data Mapper, with cache-aside reads.
One repository per table; _map_* functions are the mappers. Services never
touch SQL directly.

Read path:   EntityCache hit -> return
             miss -> SELECT -> populate cache (outside transactions only, so
             uncommitted rows never reach the cache) -> return
Write path:  SQL -> commit -> invalidate entity key + alternate keys + list
             family. Inside a Transaction the invalidation is registered as an
             after-commit hook instead of running immediately.

Errors (all raised as core.errors.AppError):
  missing row                    NOT_FOUND  "<Entity> not found"
  duplicate unique key           CONFLICT   (pre-checked, IntegrityError backstop)
  any other SQLAlchemyError      INTERNAL   "Database Error"

Assignments and grants reference their user, role and permission with
ON DELETE CASCADE, so deleting a parent removes its links in the same
statement. Ids are never reused (AUTOINCREMENT), so a link can never be
inherited by a row created later. Deleting a parent also evicts the cached
link collections of the child families.

Security:
  All queries use bound parameters. No f-strings in SQL.
  UserRepository.get_credentials() is the only read that returns the
  password hash, and it never goes through the cache.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generic, TypeVar

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from cache.store import EntityCache
from core.errors import conflict, internal_error, not_found
from rbac.models import Permission, Role, RolePermission, User, UserRole
from rbac.transactions import Transaction

logger = logging.getLogger("gatekeeper.rbac")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group", String(100), nullable=False),
    Column("name", String(100), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("group", "name", name="uq_permissions_group_name"),
    sqlite_autoincrement=True,
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
    sqlite_autoincrement=True,
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permissions_role_permission"),
    sqlite_autoincrement=True,
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore the journal mode.
    Without foreign_keys=ON the ON DELETE CASCADE clauses are inert.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_db_engine(db_url: str) -> Engine:
    """Create the engine and make sure every table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _page_params(page: int, per_page: int) -> tuple[int, int]:
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    return page, per_page


# ---------------------------------------------------------------------------
# Repository base
# ---------------------------------------------------------------------------


class _Repository(Generic[T]):
    """Shared connection handling, error translation and cache plumbing."""

    table: Table
    label: str

    def __init__(self, engine: Engine, cache: EntityCache[T]) -> None:
        self._engine = engine
        self._cache = cache

    # -- subclass hooks -------------------------------------------------

    def _map(self, row) -> T:
        raise NotImplementedError

    def _alternate_keys(self, entity: T) -> dict:
        return {}

    def _cascades(self, entity: T) -> list[tuple[str, str, object]]:
        """Child cache entries (entity, index, value) that a DELETE cascades into."""
        return []

    # -- connections ----------------------------------------------------

    @contextmanager
    def _reading(self, tx: Transaction | None) -> Iterator[Connection]:
        try:
            if tx is not None:
                yield tx.conn
            else:
                with self._engine.connect() as conn:
                    yield conn
        except SQLAlchemyError as exc:
            logger.error("%s read failed: %s", self.label, exc)
            raise internal_error(str(exc), title="Database Error") from exc

    @contextmanager
    def _writing(self, tx: Transaction | None) -> Iterator[Connection]:
        """Yield a connection for a write; commit it unless a Transaction owns it."""
        try:
            if tx is not None:
                yield tx.conn
            else:
                with self._engine.connect() as conn:
                    yield conn
                    conn.commit()
        except IntegrityError as exc:
            raise conflict(f"{self.label} already exists") from exc
        except SQLAlchemyError as exc:
            logger.error("%s write failed: %s", self.label, exc)
            raise internal_error(str(exc), title="Database Error") from exc

    def _invalidate(self, entity: T, tx: Transaction | None, cascades=()) -> None:
        alternate = self._alternate_keys(entity)

        def evict() -> None:
            self._cache.invalidate(entity.id, **alternate)
            for family, index, value in cascades:
                self._cache.invalidate_related(family, index, value)

        if tx is None:
            evict()
        else:
            tx.after_commit(evict)

    # -- generic operations --------------------------------------------

    def _select_one(self, where, tx: Transaction | None = None) -> T | None:
        with self._reading(tx) as conn:
            row = conn.execute(select(self.table).where(where)).fetchone()
        return self._map(row) if row is not None else None

    def _insert(self, values: dict, tx: Transaction | None) -> int:
        with self._writing(tx) as conn:
            result = conn.execute(self.table.insert().values(**values))
            return result.inserted_primary_key[0]

    def get(self, entity_id: int, tx: Transaction | None = None) -> T:
        """Return one entity by id. Raises NotFound."""
        cached = self._cache.get(entity_id)
        if cached is not None:
            return cached
        entity = self._select_one(self.table.c.id == entity_id, tx)
        if entity is None:
            raise not_found(f"{self.label} not found")
        if tx is None:
            self._cache.set(entity)
        return entity

    def _get_by(self, index: str, value: object, where, tx: Transaction | None) -> T:
        cached = self._cache.get_by(index, value)
        if cached is not None:
            return cached
        entity = self._select_one(where, tx)
        if entity is None:
            raise not_found(f"{self.label} not found")
        if tx is None:
            self._cache.set_by(index, value, entity)
        return entity

    def list(self, page: int = 1, per_page: int = 20) -> list[T]:
        """Return one page ordered by id. Pages are cached with the short list TTL."""
        page, per_page = _page_params(page, per_page)
        params = {"page": page, "per_page": per_page}
        cached = self._cache.get_list(params)
        if cached is not None:
            return cached
        with self._reading(None) as conn:
            rows = conn.execute(
                select(self.table).order_by(self.table.c.id).limit(per_page).offset((page - 1) * per_page)
            ).fetchall()
        items = [self._map(r) for r in rows]
        self._cache.set_list(params, items)
        return items

    def delete(self, entity_id: int, tx: Transaction | None = None) -> None:
        """Delete by id. Raises NotFound if the row does not exist."""
        with self._writing(tx) as conn:
            row = conn.execute(select(self.table).where(self.table.c.id == entity_id)).fetchone()
            if row is None:
                raise not_found(f"{self.label} not found")
            conn.execute(self.table.delete().where(self.table.c.id == entity_id))
        deleted = self._map(row)
        self._invalidate(deleted, tx, self._cascades(deleted))


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserRepository(_Repository[User]):
    """Usage:
    repo = UserRepository(engine, EntityCache(store, "user", User))
    user = repo.create(User(username="alice", email="a@x.com", hashed_password=hash_password("...")))
    repo.get_by_email("a@x.com")
    """

    table = users
    label = "User"

    def _map(self, row) -> User:
        return _map_user(row)

    def _alternate_keys(self, entity: User) -> dict:
        return {"email": entity.email}

    def _cascades(self, entity: User) -> list[tuple[str, str, object]]:
        return [("user_role", "user", entity.id)]

    def create(self, user: User, tx: Transaction | None = None) -> User:
        """Insert a user. Raises Conflict on a taken email or username."""
        with self._reading(tx) as conn:
            taken = conn.execute(
                select(users.c.email, users.c.username).where(
                    (users.c.email == user.email) | (users.c.username == user.username)
                )
            ).fetchone()
        if taken is not None:
            if taken.email == user.email:
                raise conflict("User with this email already exists")
            raise conflict("User with this username already exists")

        now = _now_iso()
        new_id = self._insert(
            {
                "username": user.username,
                "email": user.email,
                "hashed_password": user.hashed_password,
                "created_at": now,
                "updated_at": now,
            },
            tx,
        )
        created = User(id=new_id, username=user.username, email=user.email, created_at=now, updated_at=now)
        self._invalidate(created, tx)
        return created

    def get_by_email(self, email: str, tx: Transaction | None = None) -> User:
        return self._get_by("email", email, users.c.email == email, tx)

    def get_credentials(self, email: str) -> User | None:
        """Return the user WITH its password hash, or None. Never cached."""
        with self._reading(None) as conn:
            row = conn.execute(select(users).where(users.c.email == email)).fetchone()
        return _map_user(row, with_hash=True) if row is not None else None

    def update(self, user_id: int, tx: Transaction | None = None, **fields) -> User:
        """Update username, email or hashed_password. Raises NotFound / Conflict."""
        allowed = {"username", "email", "hashed_password"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        with self._writing(tx) as conn:
            before = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
            if before is None:
                raise not_found("User not found")
            if fields:
                conn.execute(users.update().where(users.c.id == user_id).values(updated_at=_now_iso(), **fields))
            after = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
        # The old email key must go too, or a lookup by it would keep
        # resolving to this user.
        self._invalidate(_map_user(before), tx)
        updated = _map_user(after)
        self._invalidate(updated, tx)
        return updated


class RoleRepository(_Repository[Role]):
    table = roles
    label = "Role"

    def _map(self, row) -> Role:
        return Role(id=row.id, name=row.name, created_at=row.created_at, updated_at=row.updated_at)

    def _alternate_keys(self, entity: Role) -> dict:
        return {"name": entity.name}

    def _cascades(self, entity: Role) -> list[tuple[str, str, object]]:
        # Any user may have held the role, so every per-user collection goes.
        return [("user_role", "user", "*"), ("role_permission", "role", entity.id)]

    def create(self, role: Role, tx: Transaction | None = None) -> Role:
        if self._select_one(roles.c.name == role.name, tx) is not None:
            raise conflict("Role with this name already exists")
        now = _now_iso()
        new_id = self._insert({"name": role.name, "created_at": now, "updated_at": now}, tx)
        created = Role(id=new_id, name=role.name, created_at=now, updated_at=now)
        self._invalidate(created, tx)
        return created

    def get_by_name(self, name: str, tx: Transaction | None = None) -> Role:
        return self._get_by("name", name, roles.c.name == name, tx)


class PermissionRepository(_Repository[Permission]):
    table = permissions
    label = "Permission"

    def _map(self, row) -> Permission:
        m = row._mapping
        return Permission(
            id=m["id"],
            group=m["group"],
            name=m["name"],
            created_at=m["created_at"],
            updated_at=m["updated_at"],
        )

    def _alternate_keys(self, entity: Permission) -> dict:
        return {"key": entity.key}

    def _cascades(self, entity: Permission) -> list[tuple[str, str, object]]:
        return [("role_permission", "role", "*")]

    def create(self, permission: Permission, tx: Transaction | None = None) -> Permission:
        where = (permissions.c["group"] == permission.group) & (permissions.c.name == permission.name)
        if self._select_one(where, tx) is not None:
            raise conflict("Permission already exists")
        now = _now_iso()
        new_id = self._insert(
            {"group": permission.group, "name": permission.name, "created_at": now, "updated_at": now},
            tx,
        )
        created = Permission(id=new_id, group=permission.group, name=permission.name, created_at=now, updated_at=now)
        self._invalidate(created, tx)
        return created

    def get_by_key(self, group: str, name: str, tx: Transaction | None = None) -> Permission:
        where = (permissions.c["group"] == group) & (permissions.c.name == name)
        return self._get_by("key", f"{group}:{name}", where, tx)


class UserRoleRepository(_Repository[UserRole]):
    table = user_roles
    label = "User role"

    def _map(self, row) -> UserRole:
        return UserRole(id=row.id, user_id=row.user_id, role_id=row.role_id, created_at=row.created_at)

    def _alternate_keys(self, entity: UserRole) -> dict:
        return {"user": entity.user_id}

    def create(self, assignment: UserRole, tx: Transaction | None = None) -> UserRole:
        where = (user_roles.c.user_id == assignment.user_id) & (user_roles.c.role_id == assignment.role_id)
        if self._select_one(where, tx) is not None:
            raise conflict("User already has this role")
        now = _now_iso()
        new_id = self._insert(
            {"user_id": assignment.user_id, "role_id": assignment.role_id, "created_at": now},
            tx,
        )
        created = UserRole(id=new_id, user_id=assignment.user_id, role_id=assignment.role_id, created_at=now)
        self._invalidate(created, tx)
        return created

    def get_by_user_id(self, user_id: int) -> list[UserRole]:
        """Return every assignment of a user (possibly empty), oldest first."""
        cached = self._cache.get_many_by("user", user_id)
        if cached is not None:
            return cached
        with self._reading(None) as conn:
            rows = conn.execute(
                select(user_roles).where(user_roles.c.user_id == user_id).order_by(user_roles.c.id)
            ).fetchall()
        items = [self._map(r) for r in rows]
        self._cache.set_many_by("user", user_id, items)
        return items


class RolePermissionRepository(_Repository[RolePermission]):
    table = role_permissions
    label = "Role permission"

    def _map(self, row) -> RolePermission:
        return RolePermission(
            id=row.id,
            role_id=row.role_id,
            permission_id=row.permission_id,
            created_at=row.created_at,
        )

    def _alternate_keys(self, entity: RolePermission) -> dict:
        return {"role": entity.role_id}

    def create(self, grant: RolePermission, tx: Transaction | None = None) -> RolePermission:
        where = (role_permissions.c.role_id == grant.role_id) & (role_permissions.c.permission_id == grant.permission_id)
        if self._select_one(where, tx) is not None:
            raise conflict("Role already has this permission")
        now = _now_iso()
        new_id = self._insert(
            {"role_id": grant.role_id, "permission_id": grant.permission_id, "created_at": now},
            tx,
        )
        created = RolePermission(id=new_id, role_id=grant.role_id, permission_id=grant.permission_id, created_at=now)
        self._invalidate(created, tx)
        return created

    def get_by_role_id(self, role_id: int) -> list[RolePermission]:
        """Return every grant of a role (possibly empty), oldest first."""
        cached = self._cache.get_many_by("role", role_id)
        if cached is not None:
            return cached
        with self._reading(None) as conn:
            rows = conn.execute(
                select(role_permissions).where(role_permissions.c.role_id == role_id).order_by(role_permissions.c.id)
            ).fetchall()
        items = [self._map(r) for r in rows]
        self._cache.set_many_by("role", role_id, items)
        return items


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _map_user(row, with_hash: bool = False) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password if with_hash else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
