"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- create account; 201 + token pair
  POST   /api/v1/auth/login                   -- password login; token pair
  GET    /api/v1/auth/profile                 -- current user (requires auth)
  POST   /api/v1/auth/refresh                 -- rotate: Bearer <refresh token> -> new pair
  PATCH  /api/v1/auth/change-password         -- new password, old sessions revoked (requires auth)
  POST   /api/v1/auth/delete-account/request  -- single-use deletion token (requires auth)
  DELETE /api/v1/auth/delete-account          -- remove own account (requires auth)

Access control for every route here is declared in auth.permissions.ROUTE_POLICIES
and enforced by the router-level interceptor attached in api/main.py.

Security:
  [H2] POST /login is rate-limited (LOGIN_RATE_LIMIT, default 10/minute per IP).
  [H4] POST /refresh is rate-limited (REFRESH_RATE_LIMIT, default 5/minute per IP).
  [C1] AuthService.login() provides timing equalization -- never inline the lookup.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

# No `from __future__ import annotations` here: FastAPI resolves string
# annotations against the globals of the slowapi wrapper, not this module.

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    DeletionRequestBody,
    DeletionRequestResponse,
    LoginRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.models import TokenPair, User
from auth.service import AuthService
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


def _token_response(pair: TokenPair, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse.from_pair(pair).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and return its first token pair.

    The username is stored lowercase; registering "Alice" after "alice"
    is a 409 conflict.
    """
    service: AuthService = request.app.state.auth_service
    pair = service.register(body.username, body.password, body.role_ids)
    return _token_response(pair, status_code=201)


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2] must sit below @router
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; returns a token pair.

    Wrong username and wrong password produce the same 401 in the same time.
    Logging in replaces any previous session's refresh token.
    """
    service: AuthService = request.app.state.auth_service
    pair = service.login(body.username, body.password)
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
@limiter.limit(_settings.refresh_rate_limit)  # [H4]
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh token in "Authorization: Bearer <token>" for a new pair.

    Each refresh token works exactly once; presenting it again is a 401.
    """
    service: AuthService = request.app.state.auth_service
    pair = service.refresh(request.headers.get("Authorization"))
    return _token_response(pair)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=UserResponse)
def profile(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the current user's profile (no password hash, no token digest)."""
    service: AuthService = request.app.state.auth_service
    return UserResponse.from_user(service.get_profile(current_user.id))


@router.patch("/auth/change-password", response_model=TokenResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Change password. Every previously issued refresh token stops working."""
    service: AuthService = request.app.state.auth_service
    pair = service.change_password(current_user.id, body.current_password, body.new_password)
    return _token_response(pair)


@router.post("/auth/delete-account/request", response_model=DeletionRequestResponse)
def request_account_deletion(
    request: Request,
    body: DeletionRequestBody,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Issue a single-use deletion token (default lifetime 5 minutes)."""
    service: AuthService = request.app.state.auth_service
    deletion = service.request_deletion(current_user.id, body.password)
    resp = JSONResponse(content=DeletionRequestResponse.from_request(deletion).model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/auth/delete-account", status_code=200)
def delete_account(
    request: Request,
    body: DeleteAccountRequest,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Delete the caller's account and its role assignments. Returns an empty 200."""
    service: AuthService = request.app.state.auth_service
    service.delete_account(
        current_user.id,
        body.password,
        confirmation=body.confirmation,
        deletion_token=body.deletion_token,
    )
    return Response(status_code=200)
