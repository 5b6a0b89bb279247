"""
api/routes/v1/users.py -- User -> role assignments.

Routes:
  POST /api/v1/users/{id}/roles   -- assign a role (user_role:create)

The user sees the new role's permissions after their next login or refresh.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import UserRoleCreate, UserRoleEnvelope, UserRoleResponse
from auth.dependencies import require_permissions
from rbac.models import UserRole

router = APIRouter()


@router.post(
    "/users/{user_id}/roles",
    response_model=UserRoleEnvelope,
    status_code=201,
    dependencies=[Depends(require_permissions("user_role:create"))],
)
def assign_role(request: Request, user_id: int, body: UserRoleCreate) -> UserRoleEnvelope:
    """404 if the user or role does not exist, 409 if already assigned."""
    state = request.app.state
    state.users.get(user_id)
    state.roles.get(body.role_id)
    assignment = state.user_roles.create(UserRole(user_id=user_id, role_id=body.role_id))
    return UserRoleEnvelope(data=UserRoleResponse.from_assignment(assignment))
