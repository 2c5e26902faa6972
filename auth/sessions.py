"""
auth/sessions.py -- Session binder: the single active refresh token per user.

The user row holds HMAC(refresh_token) for the one refresh token currently
valid for that user. Binding overwrites any previous value (last write
wins), so issuing a new refresh token silently invalidates the old one.
There is no lock around the read-compare-rebind sequence; two concurrent
refreshes with the same token can both pass verify() before either rebinds.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac

from auth.store import UserStore
from auth.tokens import TokenIssuer


class SessionBinder:
    def __init__(self, store: UserStore, issuer: TokenIssuer) -> None:
        self._store = store
        self._issuer = issuer

    def bind(self, user_id: int, refresh_token: str) -> None:
        """Make refresh_token the user's only valid refresh credential."""
        self._store.update_user(user_id, refresh_token_hash=self._issuer.hash_token(refresh_token))

    def verify(self, user_id: int, refresh_token: str) -> bool:
        """True iff the user has a bound token and it matches refresh_token."""
        user = self._store.get_by_id(user_id)
        if user is None or not user.refresh_token_hash:
            return False
        return hmac.compare_digest(user.refresh_token_hash, self._issuer.hash_token(refresh_token))

    def clear(self, user_id: int) -> None:
        """Drop the bound refresh token; every outstanding refresh token stops working."""
        self._store.update_user(user_id, refresh_token_hash=None)
