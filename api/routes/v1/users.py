"""
api/routes/v1/users.py -- User directory administration endpoints.

Routes (required permissions in auth.permissions.ROUTE_POLICIES):
  GET    /api/v1/users              -- paginated list           (user_read)
  GET    /api/v1/users/{user_id}    -- one user                 (user_read)
  POST   /api/v1/users              -- create user              (user_create)
  PATCH  /api/v1/users/{user_id}    -- username/password/roles  (user_update)
  DELETE /api/v1/users/{user_id}    -- remove user              (user_delete)

Security:
  [M4] DELETE /users/{id} refuses to delete the caller's own account; the
       self-service path (password re-entry) is DELETE /auth/delete-account.
  An admin password reset clears the target's refresh token binding, so the
  user's existing sessions cannot be refreshed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import PaginatedUsersResponse, UserCreate, UserPatch, UserResponse
from auth.dependencies import get_current_user
from auth.errors import ConflictError, NotFoundError, ValidationError
from auth.models import User
from auth.passwords import hash_password
from auth.store import UserStore
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


@router.get("/users", response_model=PaginatedUsersResponse)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=_settings.default_page_size, ge=1, le=_settings.max_page_size),
) -> PaginatedUsersResponse:
    user_store: UserStore = request.app.state.user_store
    users, total = user_store.list_users(offset=(page - 1) * limit, limit=limit)
    return PaginatedUsersResponse(
        data=[UserResponse.from_user(u) for u in users],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found.")
    return UserResponse.from_user(user)


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate) -> UserResponse:
    """Create a user with optional roles. The new user has no session until they log in."""
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_username(body.username) is not None:
        raise ConflictError("A user with that username already exists.")
    user = user_store.create_user(body.username, hash_password(body.password), body.role_ids)
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(request: Request, user_id: int, body: UserPatch) -> UserResponse:
    user_store: UserStore = request.app.state.user_store

    updates: dict = {}
    if body.username is not None:
        existing = user_store.get_by_username(body.username)
        if existing is not None and existing.id != user_id:
            raise ConflictError("A user with that username already exists.")
        updates["username"] = body.username
    if body.password is not None:
        updates["hashed_password"] = hash_password(body.password)
        updates["refresh_token_hash"] = None
    if body.role_ids is not None:
        updates["role_ids"] = body.role_ids

    if not updates:
        raise ValidationError("No fields to update.")
    return UserResponse.from_user(user_store.update_user(user_id, **updates))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    user_store: UserStore = request.app.state.user_store
    if user_id == current_user.id:  # [M4]
        raise ConflictError("Use DELETE /api/v1/auth/delete-account to remove your own account.")
    user_store.delete_user(user_id)
    return Response(status_code=204)
