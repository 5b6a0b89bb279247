"""
api/routes/v1/roles.py -- Role management and role -> permission grants.

Routes:
  GET    /api/v1/roles                     -- paginated list   (role:list)
  GET    /api/v1/roles/{id}                -- one role         (role:read)
  POST   /api/v1/roles                     -- create           (role:create)
  DELETE /api/v1/roles/{id}                -- delete           (role:delete)
  POST   /api/v1/roles/{id}/permissions    -- grant permission (role_permission:create)

Grants take effect for a user on their next login or refresh; tokens already
issued keep their snapshot.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    MessageResponse,
    RoleCreate,
    RoleEnvelope,
    RoleListResponse,
    RolePermissionCreate,
    RolePermissionEnvelope,
    RolePermissionResponse,
    RoleResponse,
)
from auth.dependencies import require_permissions
from rbac.models import Role, RolePermission

router = APIRouter()


@router.get("/roles", response_model=RoleListResponse, dependencies=[Depends(require_permissions("role:list"))])
def list_roles(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
) -> RoleListResponse:
    roles = request.app.state.roles.list(page=page, per_page=per_page)
    return RoleListResponse(data=[RoleResponse.from_role(r) for r in roles], page=page, per_page=per_page)


@router.get("/roles/{role_id}", response_model=RoleEnvelope, dependencies=[Depends(require_permissions("role:read"))])
def get_role(request: Request, role_id: int) -> RoleEnvelope:
    return RoleEnvelope(data=RoleResponse.from_role(request.app.state.roles.get(role_id)))


@router.post(
    "/roles",
    response_model=RoleEnvelope,
    status_code=201,
    dependencies=[Depends(require_permissions("role:create"))],
)
def create_role(request: Request, body: RoleCreate) -> RoleEnvelope:
    """Create a role. 409 if the name is taken."""
    role = request.app.state.roles.create(Role(name=body.name))
    return RoleEnvelope(data=RoleResponse.from_role(role))


@router.delete(
    "/roles/{role_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_permissions("role:delete"))],
)
def delete_role(request: Request, role_id: int) -> MessageResponse:
    """Delete a role together with its assignments and grants."""
    request.app.state.roles.delete(role_id)
    return MessageResponse(message="Role deleted.")


@router.post(
    "/roles/{role_id}/permissions",
    response_model=RolePermissionEnvelope,
    status_code=201,
    dependencies=[Depends(require_permissions("role_permission:create"))],
)
def grant_permission(request: Request, role_id: int, body: RolePermissionCreate) -> RolePermissionEnvelope:
    """Grant a permission to a role. 404 if either side is missing, 409 if already granted."""
    state = request.app.state
    state.roles.get(role_id)
    state.permissions.get(body.permission_id)
    grant = state.role_permissions.create(RolePermission(role_id=role_id, permission_id=body.permission_id))
    return RolePermissionEnvelope(data=RolePermissionResponse.from_grant(grant))
