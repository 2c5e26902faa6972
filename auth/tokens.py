"""
auth/tokens.py -- Token issuer: signed access/refresh JWT pairs.

Security design decisions:
  JWT: python-jose with HS256. Both halves of a pair carry the same claims
       (sub = user id, username) but are signed with two distinct secrets and
       given two distinct lifetimes. A leaked access token therefore cannot be
       replayed as a refresh token: its signature does not verify under
       REFRESH_SECRET. The "type" claim is checked as well.

       Every token carries a random "jti" so two tokens minted for the same
       user in the same second are still distinct -- rotation depends on it.

  Stored token digests: refresh tokens (and deletion tokens) are persisted
       only as HMAC-SHA256(REFRESH_SECRET, raw). Tokens are long and random,
       so bcrypt's intentional slowness is unnecessary, and bcrypt would
       truncate a JWT at 72 bytes -- inside the shared header/claims prefix.
       The digest is deterministic, so matching is a constant-time compare.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidTokenError
from auth.models import TokenPair
from core.config import Settings, get_settings

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"


class TokenIssuer:
    """Mints and verifies access/refresh token pairs.

    Usage:
        issuer = TokenIssuer()
        pair = issuer.issue_pair(user.id, user.username)
        claims = issuer.verify_refresh(pair.refresh_token)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    @property
    def access_expire_seconds(self) -> int:
        return self._settings.access_token_expire_seconds

    def _encode(self, user_id: int, username: str, token_type: str, secret: str, lifetime: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "username": username,
            "type": token_type,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + timedelta(seconds=lifetime),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def issue_pair(self, user_id: int, username: str) -> TokenPair:
        """Return a fresh (access, refresh) pair for the given identity."""
        s = self._settings
        return TokenPair(
            access_token=self._encode(user_id, username, ACCESS, s.access_secret, s.access_token_expire_seconds),
            refresh_token=self._encode(user_id, username, REFRESH, s.refresh_secret, s.refresh_token_expire_seconds),
            expires_in=s.access_token_expire_seconds,
        )

    def verify(self, token: str, secret: str, expected_type: str) -> dict[str, Any]:
        """Decode and verify a token. Raises InvalidTokenError on any failure.

        Fails on signature mismatch, malformed token, expiry, a type claim
        other than expected_type, or a subject that is not a numeric id.
        """
        try:
            claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise InvalidTokenError("Token has expired.") from exc
        except JWTError as exc:
            raise InvalidTokenError() from exc
        if claims.get("type") != expected_type:
            raise InvalidTokenError()
        try:
            claims["user_id"] = int(claims["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("Invalid token payload.") from exc
        return claims

    def verify_access(self, token: str) -> dict[str, Any]:
        return self.verify(token, self._settings.access_secret, ACCESS)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self.verify(token, self._settings.refresh_secret, REFRESH)

    def hash_token(self, raw: str) -> str:
        """Return HMAC-SHA256(REFRESH_SECRET, raw) as a hex string."""
        return hmac.new(
            self._settings.refresh_secret.encode(),
            raw.encode(),
            hashlib.sha256,
        ).hexdigest()


def generate_deletion_token() -> str:
    """Random single-use deletion token (256 bits of entropy)."""
    return f"del_{secrets.token_urlsafe(32)}"


def parse_bearer(header: str | None) -> str:
    """Extract the token from an exact "Bearer <token>" header value.

    Raises InvalidTokenError if the header is missing or malformed.
    """
    if not header:
        raise InvalidTokenError("No bearer token provided.")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token or " " in token:
        raise InvalidTokenError("Malformed Authorization header.")
    return token
