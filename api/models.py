"""
API request and response models for UserDir REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, roleIds, ...). Every model sets
populate_by_name so route code can construct them with snake_case names.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Response models never carry a password hash or a refresh-token digest.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints

from auth.models import DeletionRequest, Permission, Role, TokenPair, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 255
PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 72
PASSWORD_MAX_BYTES = 72  # bcrypt ignores everything past this


def _fits_bcrypt(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
    return value


# Names are trimmed; passwords are taken byte for byte.
StrippedStr = Annotated[str, StringConstraints(strip_whitespace=True)]
PasswordStr = Annotated[str, AfterValidator(_fits_bcrypt)]


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _Response(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(_Request):
    """Request body for POST /api/v1/auth/register."""

    username: StrippedStr = Field(min_length=USERNAME_MIN_LEN, max_length=USERNAME_MAX_LEN)
    password: PasswordStr = Field(min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)
    role_ids: Optional[list[int]] = Field(default=None, alias="roleIds", max_length=50)


class LoginRequest(_Request):
    """Request body for POST /api/v1/auth/login.

    Only non-emptiness is checked: length rules belong to registration, and
    rejecting a short password here would reveal the policy before bcrypt runs.
    """

    username: StrippedStr = Field(min_length=1, max_length=USERNAME_MAX_LEN)
    password: PasswordStr = Field(min_length=1, max_length=PASSWORD_MAX_LEN)


class ChangePasswordRequest(_Request):
    """Request body for PATCH /api/v1/auth/change-password."""

    current_password: PasswordStr = Field(alias="currentPassword", min_length=1, max_length=PASSWORD_MAX_LEN)
    new_password: PasswordStr = Field(alias="newPassword", min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)


class DeletionRequestBody(_Request):
    """Request body for POST /api/v1/auth/delete-account/request."""

    password: PasswordStr = Field(min_length=1, max_length=PASSWORD_MAX_LEN)


class DeleteAccountRequest(_Request):
    """Request body for DELETE /api/v1/auth/delete-account."""

    password: PasswordStr = Field(min_length=1, max_length=PASSWORD_MAX_LEN)
    confirmation: Optional[str] = Field(default=None, pattern=r"^DELETE$")
    deletion_token: Optional[str] = Field(default=None, alias="deletionToken", max_length=128)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class TokenResponse(_Response):
    """Access/refresh pair returned by register, login, refresh and change-password."""

    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class DeletionRequestResponse(_Response):
    """Single-use deletion token; shown once, never retrievable again."""

    deletion_token: str = Field(alias="deletionToken")
    expires_in: int = Field(alias="expiresIn")

    @classmethod
    def from_request(cls, req: DeletionRequest) -> "DeletionRequestResponse":
        return cls(deletion_token=req.token, expires_in=req.expires_in)


# ---------------------------------------------------------------------------
# Directory -- response models
# ---------------------------------------------------------------------------


class PermissionResponse(_Response):
    id: int
    name: str
    description: str

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(id=permission.id, name=permission.name, description=permission.description)


class RoleResponse(_Response):
    id: int
    name: str
    description: str
    permissions: list[PermissionResponse] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=[PermissionResponse.from_permission(p) for p in role.permissions],
        )


class UserResponse(_Response):
    """User profile. Built by from_user(), which copies only non-secret fields."""

    id: int
    username: str
    roles: list[RoleResponse] = Field(default_factory=list)
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            roles=[RoleResponse.from_role(r) for r in user.roles],
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class PaginatedUsersResponse(_Response):
    """Response for GET /api/v1/users."""

    data: list[UserResponse]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Directory -- admin request models
# ---------------------------------------------------------------------------


class UserCreate(_Request):
    """Request body for POST /api/v1/users (admin)."""

    username: StrippedStr = Field(min_length=USERNAME_MIN_LEN, max_length=USERNAME_MAX_LEN)
    password: PasswordStr = Field(min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)
    role_ids: Optional[list[int]] = Field(default=None, alias="roleIds", max_length=50)


class UserPatch(_Request):
    """Request body for PATCH /api/v1/users/{user_id} (admin). All fields optional."""

    username: Optional[StrippedStr] = Field(default=None, min_length=USERNAME_MIN_LEN, max_length=USERNAME_MAX_LEN)
    password: Optional[PasswordStr] = Field(default=None, min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)
    role_ids: Optional[list[int]] = Field(default=None, alias="roleIds", max_length=50)


class RoleCreate(_Request):
    """Request body for POST /api/v1/roles."""

    name: StrippedStr = Field(min_length=1, max_length=100)
    description: StrippedStr = Field(default="", max_length=1000)
    permission_ids: Optional[list[int]] = Field(default=None, alias="permissionIds", max_length=200)


class RolePatch(_Request):
    """Request body for PATCH /api/v1/roles/{role_id}. All fields optional."""

    name: Optional[StrippedStr] = Field(default=None, min_length=1, max_length=100)
    description: Optional[StrippedStr] = Field(default=None, max_length=1000)
    permission_ids: Optional[list[int]] = Field(default=None, alias="permissionIds", max_length=200)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
