"""
auth/permissions.py -- Permission evaluator and the static route policy table.

Authorization model (RBAC): users hold roles, roles hold permissions. A route
declares the set of permission names it requires; a user is allowed if they
hold AT LEAST ONE of them (any-of, not all-of). An empty requirement set
means "no permission needed".

Every decision re-reads the user's roles and permissions from the store.
There is no cache, so a permission revoked mid-session takes effect on the
very next request.

Route policies live in ROUTE_POLICIES, an explicit table keyed by
(HTTP method, route name). Public routes carry public=True -- a
route is never treated as public just because it has no entry. Routes that
are missing from the table are denied (see auth/dependencies.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from auth.store import UserStore

logger = logging.getLogger("userdir.auth")

# Default permission catalogue, seeded by auth/seed.py.
PERMISSIONS: dict[str, str] = {
    "user_create": "Create users",
    "user_read": "Read users",
    "user_update": "Update users",
    "user_delete": "Delete users",
    "role_create": "Create roles",
    "role_read": "Read roles",
    "role_update": "Update roles",
    "role_delete": "Delete roles",
}


@dataclass(frozen=True)
class RoutePolicy:
    """Access rule for one route.

    public=True  -- no authentication at all.
    public=False -- a valid access token is required; if permissions is
                    non-empty the user must also hold at least one of them.
    """

    public: bool = False
    permissions: frozenset[str] = field(default_factory=frozenset)


PUBLIC = RoutePolicy(public=True)
AUTHENTICATED = RoutePolicy()


def requires(*names: str) -> RoutePolicy:
    return RoutePolicy(permissions=frozenset(names))


# Keyed by (HTTP method, route name). The name is the endpoint function's
# name; unlike route.path it does not depend on whether FastAPI reports the
# router-relative or the prefixed path for an included router.
ROUTE_POLICIES: dict[tuple[str, str], RoutePolicy] = {
    # Sessions -- /api/v1/auth/...
    ("POST", "register"): PUBLIC,
    ("POST", "login"): PUBLIC,
    ("POST", "refresh"): PUBLIC,  # the refresh token itself is the credential
    ("GET", "profile"): AUTHENTICATED,
    ("PATCH", "change_password"): AUTHENTICATED,
    ("POST", "request_account_deletion"): AUTHENTICATED,
    ("DELETE", "delete_account"): AUTHENTICATED,
    # User administration -- /api/v1/users[/{user_id}]
    ("GET", "list_users"): requires("user_read"),
    ("GET", "get_user"): requires("user_read"),
    ("POST", "create_user"): requires("user_create"),
    ("PATCH", "update_user"): requires("user_update"),
    ("DELETE", "delete_user"): requires("user_delete"),
    # Role administration -- /api/v1/roles[/{role_id}], /api/v1/permissions
    ("GET", "list_roles"): requires("role_read"),
    ("GET", "get_role"): requires("role_read"),
    ("POST", "create_role"): requires("role_create"),
    ("PATCH", "update_role"): requires("role_update"),
    ("DELETE", "delete_role"): requires("role_delete"),
    ("GET", "list_permissions"): requires("role_read"),
    # Operational -- /api/v1/health
    ("GET", "health"): PUBLIC,
}


def policy_for(method: str, route_name: str) -> RoutePolicy | None:
    """Return the policy for a route, or None if the route has no entry."""
    return ROUTE_POLICIES.get((method.upper(), route_name))


class PermissionEvaluator:
    """Decides allow/deny for a user against a route's required permissions."""

    def __init__(self, store: UserStore) -> None:
        self._store = store

    def authorize(self, user_id: int | None, required: Iterable[str]) -> bool:
        required = set(required)
        if not required:
            return True
        if user_id is None:
            return False
        try:
            held = self._store.resolve_user_permissions(user_id)
        except Exception:
            # An unresolvable subject is a deny, never an allow.
            logger.exception("Permission lookup failed for user_id=%s; denying", user_id)
            return False
        if held is None:
            logger.warning("Permission check for unknown user_id=%s; denying", user_id)
            return False
        return not held.isdisjoint(required)
