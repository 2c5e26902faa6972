"""
api/main.py -- FastAPI application entry point for UserDir.

Exposes the authentication/authorization core over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware (Starlette wraps the last-added middleware outermost):
  log_requests          -- access log line per request
  SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  CORSMiddleware        -- adds CORS headers for allowed browser origins
  TrustedHostMiddleware -- rejects requests with unexpected Host headers

Authorization: every API router is included with the enforce_route_policy
dependency, which consults auth.permissions.ROUTE_POLICIES for the matched
route before the handler runs.

Lifespan handles startup (store, default roles/permissions, services, purge
task) and shutdown (cancel purge task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.dependencies import enforce_route_policy
from auth.errors import AuthError
from auth.permissions import PermissionEvaluator
from auth.seed import seed_defaults
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("userdir.api")

_settings = get_settings()

_PURGE_INTERVAL_SECONDS = 10 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired account-deletion tokens every 10 minutes.

    Expiry is already enforced on every use (consume_deletion_token checks
    expires_at); this loop only keeps the table small. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and
    unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        purged = await asyncio.to_thread(app.state.auth_service.purge_expired_deletion_tokens)
        if purged:
            logger.info("Purged %d expired deletion token(s)", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, user_store: UserStore) -> None:
    """Wire the store and the services built on it into app.state."""
    app.state.user_store = user_store
    app.state.auth_service = AuthService(user_store, _settings)
    app.state.permission_evaluator = PermissionEvaluator(user_store)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- creates the schema.
      2. Seed default permissions and roles (idempotent). The admin user is
         created only by `python main.py seed`.
      3. Services, then the purge task, which references the auth service.
    """
    logger.info("UserDir API starting up")
    user_store = UserStore()
    seed_defaults(user_store)
    init_state(app, user_store)
    logger.info("Auth initialized (has_users=%s)", user_store.has_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("UserDir API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="UserDir API",
    description="Registration, login, token rotation and role-based access control for a user directory.",
    version=__version__,
    lifespan=lifespan,
    # No interactive documentation UI; the OpenAPI schema stays available.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() prepends, so a request meets these in reverse order:
# SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
#
# enforce_route_policy runs before every handler on these routers.
# ---------------------------------------------------------------------------

_policy = [Depends(enforce_route_policy)]

app.include_router(auth_router, prefix="/api/v1", tags=["Sessions"], dependencies=_policy)
app.include_router(users_router, prefix="/api/v1", tags=["Users"], dependencies=_policy)
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"], dependencies=_policy)


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map domain errors to their HTTP status with a stable code and message.

    InternalError carries only a generic message; its cause was logged at
    the service boundary.
    """
    response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    # Echoing input values back could reflect a submitted password.
    errors = [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return _error_response(422, "validation_error", "Request validation failed.", str(errors))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly on the app (not a router) so it is always reachable and
# never throttled or policy-checked. Listed as public in ROUTE_POLICIES.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    components = {"app": "ok", "database": "ok"}
    try:
        request.app.state.user_store.has_users()
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    return HealthResponse(version=__version__, components=components)
