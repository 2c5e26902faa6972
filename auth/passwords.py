"""
auth/passwords.py -- Credential verifier (bcrypt password hashing).

Security design decisions:
  bcrypt directly, no passlib wrapper. passlib's wrap-bug detection builds a
  password longer than 72 bytes, which bcrypt 4.x rejects with an explicit
  error.

  bcrypt only looks at the first 72 bytes. Longer passwords are refused by
  hash_password() (ValidationError) instead of truncated, so two passwords
  that share a 72-byte prefix never verify as each other. verify_password()
  answers False for them; the API layer rejects them with 422 first.

  The cost factor comes from Settings.bcrypt_rounds (default 10).

  _DUMMY_HASH enables timing equalization in verify_password_timing_safe()
  so response time does not reveal whether a username exists [C1].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import bcrypt

from auth.errors import ValidationError
from core.config import get_settings

BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Raises ValidationError when the password exceeds 72 UTF-8 bytes.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises on mismatch or on a malformed stored hash -- returns False.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("userdir_timing_dummy")


def verify_password_timing_safe(plain: str, hashed: str | None) -> bool:
    """Verify a password, spending the same bcrypt work when there is no hash.

    Callers pass hashed=None for an unknown username. bcrypt still runs
    against _DUMMY_HASH, so "no such user" and "wrong password" cost the
    same and return the same result.
    """
    if hashed is None:
        verify_password(plain, _DUMMY_HASH)
        return False
    return verify_password(plain, hashed)
