"""
API request and response models for Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in rbac/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response is an envelope with a top-level "success" flag. Failures carry
an "errors" list whose records mirror core.errors.ErrorDetail.

Input shape (lengths, required fields) is checked here. Business validation
such as the email format lives in the services so the same messages apply
whether a call arrives over HTTP or from Python.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbac.models import Role, RolePermission, User, UserRole

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorRecord(BaseModel):
    code: int = Field(description="HTTP status this error maps to.")
    source: str = Field(description="Module, function and line that raised the error.")
    title: str
    message: str


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    success: bool = False
    errors: list[ErrorRecord]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response model for GET /api/v1/health.

    components maps a dependency name to "ok", "error" or "disabled" (the
    cache when no REDIS_URL is configured).
    """

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


def _strip(value: object) -> object:
    return value.strip() if isinstance(value, str) else value


class RegisterRequest(BaseModel):
    """Identifiers are trimmed. The password is kept exactly as sent."""

    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)

    @field_validator("username", "email", mode="before")
    @classmethod
    def strip_identifiers(cls, value: object) -> object:
        return _strip(value)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value: object) -> object:
        return _strip(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Auth responses
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    success: bool = True
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash."""

    id: int
    username: str
    email: str
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_user(cls, user: User) -> UserResponse:
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserEnvelope(BaseModel):
    success: bool = True
    data: UserResponse


class MeResponse(BaseModel):
    """GET /auth/me: the stored user plus the access snapshot from the token."""

    success: bool = True
    data: UserResponse
    roles: list[str]
    permissions: list[str]


# ---------------------------------------------------------------------------
# Roles, grants and assignments
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class RoleResponse(BaseModel):
    id: int
    name: str
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_role(cls, role: Role) -> RoleResponse:
        return cls(id=role.id, name=role.name, created_at=role.created_at, updated_at=role.updated_at)


class RoleEnvelope(BaseModel):
    success: bool = True
    data: RoleResponse


class RoleListResponse(BaseModel):
    success: bool = True
    data: list[RoleResponse]
    page: int
    per_page: int


class RolePermissionCreate(BaseModel):
    permission_id: int = Field(ge=1)


class RolePermissionResponse(BaseModel):
    id: int
    role_id: int
    permission_id: int
    created_at: str | None = None

    @classmethod
    def from_grant(cls, grant: RolePermission) -> RolePermissionResponse:
        return cls(
            id=grant.id,
            role_id=grant.role_id,
            permission_id=grant.permission_id,
            created_at=grant.created_at,
        )


class RolePermissionEnvelope(BaseModel):
    success: bool = True
    data: RolePermissionResponse


class UserRoleCreate(BaseModel):
    role_id: int = Field(ge=1)


class UserRoleResponse(BaseModel):
    id: int
    user_id: int
    role_id: int
    created_at: str | None = None

    @classmethod
    def from_assignment(cls, assignment: UserRole) -> UserRoleResponse:
        return cls(
            id=assignment.id,
            user_id=assignment.user_id,
            role_id=assignment.role_id,
            created_at=assignment.created_at,
        )


class UserRoleEnvelope(BaseModel):
    success: bool = True
    data: UserRoleResponse
