"""
rbac/models.py -- Domain dataclasses for identities and the RBAC graph.

Pattern: Data class (pure data container, zero logic). Stores own the SQL,
services own the rules; these classes only carry shape.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An identity that can log in.

    hashed_password is populated only on the credential path
    (UserRepository.get_credentials). Every other read -- including anything
    served from the cache -- returns it as None.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Role:
    name: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Permission:
    """A (group, name) pair. `key` is the canonical "group:name" string."""

    group: str
    name: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def key(self) -> str:
        return permission_key(self.group, self.name)


@dataclass
class UserRole:
    """RoleAssignment: one user holds one role."""

    user_id: int
    role_id: int
    id: int | None = None
    created_at: str | None = None


@dataclass
class RolePermission:
    """RoleGrant: one role is granted one permission."""

    role_id: int
    permission_id: int
    id: int | None = None
    created_at: str | None = None


def permission_key(group: str, name: str) -> str:
    return f"{group}:{name}"
