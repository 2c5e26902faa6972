"""
auth/errors.py -- Domain error taxonomy for the auth core.

Every error carries a stable machine-readable code, an HTTP status the
transport layer maps it to, and a caller-safe message. Domain errors are
raised deliberately by the core and propagate unchanged to the transport
boundary. Anything else is converted to InternalError at the service
boundary (see auth/service.py) -- the original cause is logged, never
returned.

Layer rule: no imports from api/. This module has no dependencies at all.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for errors raised deliberately by the auth core."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Request failed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AuthError):
    """Malformed input (422)."""

    status_code = 422
    code = "validation_error"
    default_message = "Request validation failed."


class ConflictError(AuthError):
    """Duplicate username or an invalid state transition (409)."""

    status_code = 409
    code = "conflict"
    default_message = "Conflict with current state."


class UnauthorizedError(AuthError):
    """Bad credentials, or an invalid/expired/mismatched token (401)."""

    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidTokenError(UnauthorizedError):
    """Token failed signature, structure, type or expiry checks."""

    code = "invalid_token"
    default_message = "Invalid or expired token."


class ForbiddenError(UnauthorizedError):
    """Authenticated, but holds none of the permissions the route requires (403)."""

    status_code = 403
    code = "forbidden"
    default_message = "Insufficient permissions."


class NotFoundError(AuthError):
    """Unknown user, role, permission or id (404)."""

    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class InternalError(AuthError):
    """Store failure, signing failure or any unexpected exception (500)."""

    status_code = 500
    code = "internal_error"
    default_message = "An unexpected error occurred."
