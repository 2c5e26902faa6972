"""
auth/service.py -- Authentication service: the credential lifecycle state machine.

Per-user states:
    Unregistered -> Active -> (PasswordChanged | TokensRotated)* -> Deleted

Operations (each returns a fresh TokenPair unless noted):
    register         -- create user, bind first refresh token
    login            -- verify credentials, rebind refresh token
    get_profile      -- User (caller strips secrets)
    refresh          -- strict rotation: each refresh token is usable exactly once
    change_password  -- new hash, old sessions invalidated, new pair bound
    request_deletion -- DeletionRequest (single-use, short-lived token)
    delete_account   -- removes the user; returns None

Error policy:
    Domain errors (auth.errors.AuthError subclasses) propagate unchanged.
    Anything else is logged with its traceback and re-raised as
    InternalError, so store or signing failures never leak to callers.

Known races (deliberately not locked):
    - register: the username pre-check and the insert are separate steps.
      The UNIQUE index turns the losing insert into ConflictError.
    - refresh: two concurrent calls with the same token can both pass the
      binder check; the last rebind wins and the other pair's refresh token
      is dead on arrival.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Iterable

from auth.errors import AuthError, ConflictError, InternalError, NotFoundError, UnauthorizedError, ValidationError
from auth.models import DeletionRequest, TokenPair, User
from auth.passwords import hash_password, verify_password, verify_password_timing_safe
from auth.sessions import SessionBinder
from auth.store import UserStore, canonical_username
from auth.tokens import TokenIssuer, generate_deletion_token, parse_bearer
from core.config import Settings, get_settings

logger = logging.getLogger("userdir.auth")

DELETE_CONFIRMATION = "DELETE"


def _boundary(func):
    """Convert unexpected exceptions into InternalError at a public operation boundary."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AuthError:
            raise
        except Exception as exc:
            logger.exception("Internal error in AuthService.%s", func.__name__)
            raise InternalError() from exc

    return wrapper


class AuthService:
    """Orchestrates credential operations over the store, issuer and binder.

    Usage:
        service = AuthService(store)
        pair = service.register("Alice", "P@ssw0rd1")
        pair = service.refresh(f"Bearer {pair.refresh_token}")
    """

    def __init__(self, store: UserStore, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._issuer = TokenIssuer(self._settings)
        self._binder = SessionBinder(store, self._issuer)

    @property
    def issuer(self) -> TokenIssuer:
        return self._issuer

    def _issue_and_bind(self, user: User) -> TokenPair:
        pair = self._issuer.issue_pair(user.id, user.username)
        self._binder.bind(user.id, pair.refresh_token)
        return pair

    def _require_user(self, user_id: int) -> User:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    @_boundary
    def register(self, username: str, password: str, role_ids: Iterable[int] | None = None) -> TokenPair:
        username = canonical_username(username)
        if self._store.get_by_username(username) is not None:
            raise ConflictError(f"Username '{username}' already exists.")
        user = self._store.create_user(username, hash_password(password), role_ids)
        logger.info("Registered user_id=%s username=%s", user.id, user.username)
        return self._issue_and_bind(user)

    @_boundary
    def login(self, username: str, password: str) -> TokenPair:
        """Verify credentials and start a new session, replacing any previous one.

        Unknown username and wrong password take the same bcrypt time and
        raise the same error [C1].
        """
        user = self._store.get_by_username(username)
        if not verify_password_timing_safe(password, user.hashed_password if user else None):
            logger.warning("Failed login for username=%s", canonical_username(username))
            raise UnauthorizedError("Invalid credentials.")
        return self._issue_and_bind(user)

    @_boundary
    def get_profile(self, user_id: int) -> User:
        return self._require_user(user_id)

    # ------------------------------------------------------------------
    # Token rotation
    # ------------------------------------------------------------------

    @_boundary
    def refresh(self, authorization_header: str | None) -> TokenPair:
        """Exchange a refresh token (sent as "Bearer <token>") for a new pair.

        Rejects: malformed header, bad signature, expired token, an access
        token presented as a refresh token, a deleted subject, and any token
        that is not the one currently bound to the user (reused or rotated
        out).
        """
        token = parse_bearer(authorization_header)
        claims = self._issuer.verify_refresh(token)
        user = self._store.get_by_id(claims["user_id"])
        if user is None:
            raise UnauthorizedError("Invalid refresh token.")
        if not self._binder.verify(user.id, token):
            logger.warning("Rejected stale or unknown refresh token for user_id=%s", user.id)
            raise UnauthorizedError("Invalid refresh token.")
        pair = self._issuer.issue_pair(user.id, user.username)
        self._binder.clear(user.id)
        self._binder.bind(user.id, pair.refresh_token)
        logger.info("Rotated refresh token for user_id=%s", user.id)
        return pair

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    @_boundary
    def change_password(self, user_id: int, current_password: str, new_password: str) -> TokenPair:
        """Replace the password and force re-authentication of every other session."""
        user = self._require_user(user_id)
        if not verify_password(current_password, user.hashed_password):
            raise UnauthorizedError("Current password is incorrect.")
        if current_password == new_password:
            raise ConflictError("New password must differ from the current password.")
        self._store.update_user(user.id, hashed_password=hash_password(new_password))
        self._binder.clear(user.id)
        logger.info("Password changed for user_id=%s", user.id)
        return self._issue_and_bind(user)

    # ------------------------------------------------------------------
    # Account deletion
    # ------------------------------------------------------------------

    @_boundary
    def request_deletion(self, user_id: int, password: str) -> DeletionRequest:
        """Issue a single-use deletion token valid for DELETION_TOKEN_EXPIRE_SECONDS.

        Any outstanding deletion token for the user is replaced.
        """
        user = self._require_user(user_id)
        if not verify_password(password, user.hashed_password):
            raise UnauthorizedError("Invalid password.")
        raw = generate_deletion_token()
        lifetime = self._settings.deletion_token_expire_seconds
        self._store.put_deletion_token(user.id, self._issuer.hash_token(raw), int(time.time()) + lifetime)
        logger.info("Deletion requested for user_id=%s", user.id)
        return DeletionRequest(token=raw, expires_in=lifetime)

    @_boundary
    def delete_account(
        self,
        user_id: int,
        password: str,
        confirmation: str | None = None,
        deletion_token: str | None = None,
    ) -> None:
        """Delete the caller's own account.

        One-step: password only (confirmation optional, must be "DELETE" if given).
        Two-step: when REQUIRE_DELETION_TOKEN is set or a token is supplied,
        confirmation "DELETE" and an unexpired token from request_deletion()
        are both mandatory. The token is consumed whether or not a later
        step fails.
        """
        two_step = self._settings.require_deletion_token or deletion_token is not None
        if (confirmation is not None or two_step) and confirmation != DELETE_CONFIRMATION:
            raise ValidationError(f'Confirmation must be exactly "{DELETE_CONFIRMATION}".')
        user = self._require_user(user_id)
        if not verify_password(password, user.hashed_password):
            raise UnauthorizedError("Invalid password.")
        if two_step:
            consumed = deletion_token is not None and self._store.consume_deletion_token(
                user.id, self._issuer.hash_token(deletion_token), int(time.time())
            )
            if not consumed:
                raise UnauthorizedError("Invalid or expired deletion token.")
        self._store.delete_user(user.id)
        logger.info("Deleted account user_id=%s", user.id)

    @_boundary
    def purge_expired_deletion_tokens(self) -> int:
        return self._store.purge_expired_deletion_tokens(int(time.time()))
