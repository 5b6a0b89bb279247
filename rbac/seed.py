"""
rbac/seed.py -- Idempotent bootstrap of the default roles and permissions.

Defaults:
  permissions  {user, role, permission, role_permission, user_role}
               x {create, read, update, delete, list}, plus user:me
  admin        every permission above
  user         user:read and user:me (the role new registrations receive)

Runs on every startup when SEED_ON_STARTUP=true. Existing rows are left
alone, so operators may add grants on top of the defaults without the seed
fighting them. It never removes anything.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from core.errors import AppError, ErrorKind
from rbac.models import Permission, Role, RolePermission, permission_key
from rbac.store import PermissionRepository, RolePermissionRepository, RoleRepository

logger = logging.getLogger("gatekeeper.rbac")

T = TypeVar("T")

PERMISSION_GROUPS = ("user", "role", "permission", "role_permission", "user_role")
PERMISSION_ACTIONS = ("create", "read", "update", "delete", "list")

ADMIN_ROLE = "admin"
USER_ROLE = "user"

USER_ROLE_PERMISSIONS = ("user:read", "user:me")


def default_permissions() -> list[tuple[str, str]]:
    pairs = [(group, action) for group in PERMISSION_GROUPS for action in PERMISSION_ACTIONS]
    pairs.append(("user", "me"))
    return pairs


def _get_or_create(get: Callable[[], T], create: Callable[[], T]) -> tuple[T, bool]:
    try:
        return get(), False
    except AppError as exc:
        if exc.kind is not ErrorKind.NOT_FOUND:
            raise
    return create(), True


def seed_defaults(
    role_repo: RoleRepository,
    permission_repo: PermissionRepository,
    grant_repo: RolePermissionRepository,
) -> None:
    """Create any missing default role, permission or grant."""
    created = 0

    by_key: dict[str, Permission] = {}
    for group, name in default_permissions():
        perm, new = _get_or_create(
            lambda g=group, n=name: permission_repo.get_by_key(g, n),
            lambda g=group, n=name: permission_repo.create(Permission(group=g, name=n)),
        )
        by_key[permission_key(group, name)] = perm
        created += new

    wanted = {
        ADMIN_ROLE: list(by_key),
        USER_ROLE: list(USER_ROLE_PERMISSIONS),
    }
    for role_name, keys in wanted.items():
        role, new = _get_or_create(
            lambda r=role_name: role_repo.get_by_name(r),
            lambda r=role_name: role_repo.create(Role(name=r)),
        )
        created += new
        granted = {g.permission_id for g in grant_repo.get_by_role_id(role.id)}
        for key in keys:
            perm = by_key[key]
            if perm.id in granted:
                continue
            grant_repo.create(RolePermission(role_id=role.id, permission_id=perm.id))
            created += 1

    if created:
        logger.info("RBAC seed: created %d default role/permission/grant rows", created)
    else:
        logger.info("RBAC seed: defaults already present")
