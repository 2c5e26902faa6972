"""
api/routes/v1/roles.py -- Role and permission administration endpoints.

Routes (required permissions in auth.permissions.ROUTE_POLICIES):
  GET    /api/v1/roles             -- all roles with permissions (role_read)
  GET    /api/v1/roles/{role_id}   -- one role                   (role_read)
  POST   /api/v1/roles             -- create role                (role_create)
  PATCH  /api/v1/roles/{role_id}   -- rename / re-permission     (role_update)
  DELETE /api/v1/roles/{role_id}   -- remove role                (role_delete)
  GET    /api/v1/permissions       -- permission catalogue       (role_read)

Permission changes take effect on the next request of every affected user;
the evaluator never caches.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from api.models import PermissionResponse, RoleCreate, RolePatch, RoleResponse
from auth.errors import NotFoundError, ValidationError
from auth.store import UserStore

router = APIRouter()


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request) -> list[RoleResponse]:
    user_store: UserStore = request.app.state.user_store
    return [RoleResponse.from_role(r) for r in user_store.list_roles()]


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int) -> RoleResponse:
    user_store: UserStore = request.app.state.user_store
    role = user_store.get_role(role_id)
    if role is None:
        raise NotFoundError(f"Role with ID {role_id} not found.")
    return RoleResponse.from_role(role)


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate) -> RoleResponse:
    user_store: UserStore = request.app.state.user_store
    role = user_store.create_role(body.name, body.description, body.permission_ids)
    return RoleResponse.from_role(role)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(request: Request, role_id: int, body: RolePatch) -> RoleResponse:
    user_store: UserStore = request.app.state.user_store
    if body.name is None and body.description is None and body.permission_ids is None:
        raise ValidationError("No fields to update.")
    role = user_store.update_role(
        role_id,
        name=body.name,
        description=body.description,
        permission_ids=body.permission_ids,
    )
    return RoleResponse.from_role(role)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int) -> Response:
    user_store: UserStore = request.app.state.user_store
    user_store.delete_role(role_id)
    return Response(status_code=204)


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(request: Request) -> list[PermissionResponse]:
    user_store: UserStore = request.app.state.user_store
    return [PermissionResponse.from_permission(p) for p in user_store.list_permissions()]
