"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

enforce_route_policy() is the authorization interceptor. It is attached once,
at router-include time, to every API router (see api/main.py), so route
handlers carry no permission annotations of their own. For each request it:
  1. resolves the matched route by name (e.g. get_user for /api/v1/users/{user_id}),
  2. looks up its RoutePolicy in auth.permissions.ROUTE_POLICIES,
  3. lets public routes through untouched,
  4. authenticates everything else with the Bearer access token, and
  5. asks the PermissionEvaluator for an any-of decision.
Routes with no table entry are denied.

get_current_user() authenticates via "Authorization: Bearer <access token>"
and memoizes the user on request.state so the interceptor and the handler
share one lookup.

Errors are raised as auth.errors domain exceptions; api/main.py maps them to
HTTP status codes.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import ForbiddenError, UnauthorizedError
from auth.models import User
from auth.permissions import PermissionEvaluator, policy_for
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import parse_bearer

logger = logging.getLogger("userdir.auth")


def get_current_user(request: Request) -> User:
    """Require a valid access token. Raises UnauthorizedError otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    cached = getattr(request.state, "user", None)
    if cached is not None:
        return cached
    service: AuthService = request.app.state.auth_service
    user_store: UserStore = request.app.state.user_store

    token = parse_bearer(request.headers.get("Authorization"))
    claims = service.issuer.verify_access(token)
    user = user_store.get_by_id(claims["user_id"])
    if user is None:
        raise UnauthorizedError("User no longer exists.")
    request.state.user = user
    return user


def _route_name(request: Request) -> str | None:
    """Name of the matched route (the endpoint function's name), or None."""
    route = request.scope.get("route")
    name = getattr(route, "name", None)
    if name:
        return name
    return getattr(request.scope.get("endpoint"), "__name__", None)


def enforce_route_policy(request: Request) -> None:
    """Authorize the request against the static route policy table."""
    name = _route_name(request)
    policy = policy_for(request.method, name) if name else None
    if policy is None:
        logger.warning("No route policy for %s %s (%s); denying", request.method, request.url.path, name)
        raise ForbiddenError("Route is not accessible.")
    if policy.public:
        return

    user = get_current_user(request)
    evaluator: PermissionEvaluator = request.app.state.permission_evaluator
    if not evaluator.authorize(user.id, policy.permissions):
        logger.info("Denied user_id=%s on %s %s", user.id, request.method, request.url.path)
        raise ForbiddenError()
