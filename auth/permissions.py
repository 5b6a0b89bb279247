"""
auth/permissions.py -- Flatten user -> roles -> grants -> permissions.

resolve(user_id) walks the RBAC graph:

    assignments of the user          failure propagates (nothing to resolve)
      -> role of each assignment     failure skips that assignment
         -> grants of each role      failure skips that role's grants
            -> permission of grant   failure skips that grant

Per-item failures are expected (an assignment may point at a role deleted
since) and must not deny the user every other permission they hold. Each
skip is logged at DEBUG. The walk is a fold: it keeps what succeeded and
drops what did not.

Role names keep assignment order and are not deduplicated. Permission keys
("group:name") are a set, returned sorted.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from core.errors import AppError
from rbac.store import PermissionRepository, RolePermissionRepository, RoleRepository, UserRoleRepository

logger = logging.getLogger("gatekeeper.auth")

T = TypeVar("T")


@dataclass
class ResolvedAccess:
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


def _attempt(what: str, fn: Callable[[], T]) -> T | None:
    try:
        return fn()
    except AppError as exc:
        logger.debug("Skipping %s during permission resolution: %s", what, exc)
        return None


class PermissionResolver:
    """Usage:
    resolver = PermissionResolver(user_roles, roles, role_permissions, permissions)
    access = resolver.resolve(42)
    access.roles        # ["user"]
    access.permissions  # ["user:me", "user:read"]
    """

    def __init__(
        self,
        user_roles: UserRoleRepository,
        roles: RoleRepository,
        role_permissions: RolePermissionRepository,
        permissions: PermissionRepository,
    ) -> None:
        self._user_roles = user_roles
        self._roles = roles
        self._role_permissions = role_permissions
        self._permissions = permissions

    def resolve(self, user_id: int) -> ResolvedAccess:
        assignments = self._user_roles.get_by_user_id(user_id)

        role_names: list[str] = []
        keys: set[str] = set()
        for assignment in assignments:
            role = _attempt(f"role {assignment.role_id}", lambda: self._roles.get(assignment.role_id))
            if role is None:
                continue
            role_names.append(role.name)

            grants = _attempt(f"grants of role {role.id}", lambda: self._role_permissions.get_by_role_id(role.id))
            for grant in grants or []:
                perm = _attempt(
                    f"permission {grant.permission_id}",
                    lambda: self._permissions.get(grant.permission_id),
                )
                if perm is not None:
                    keys.add(perm.key)

        return ResolvedAccess(roles=role_names, permissions=sorted(keys))
