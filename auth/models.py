"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store and the service do the work.

Roles and permissions are explicit entities with typed id/name fields joined
many-to-many (user_roles, role_permissions) -- never loosely-typed dicts.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Permission:
    """An atomic capability, e.g. "user_create"."""

    name: str
    description: str = ""
    id: int | None = None


@dataclass
class Role:
    """A named bundle of permissions."""

    name: str
    description: str = ""
    permissions: list[Permission] = field(default_factory=list)
    id: int | None = None

    @property
    def permission_names(self) -> set[str]:
        return {p.name for p in self.permissions}


@dataclass
class User:
    """An identity in the user directory.

    username is always stored lowercase -- the store canonicalizes on every
    write and lookup, so "Alice" and "alice" are the same account.

    hashed_password is a bcrypt hash; the plaintext is never kept.
    refresh_token_hash is the HMAC digest of the one refresh token currently
    valid for this user, or None when no session is bound.
    """

    username: str
    hashed_password: str
    id: int | None = None
    refresh_token_hash: str | None = None
    roles: list[Role] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def permission_names(self) -> set[str]:
        names: set[str] = set()
        for role in self.roles:
            names |= role.permission_names
        return names


@dataclass(frozen=True)
class TokenPair:
    """Transient access/refresh pair returned by every credential operation."""

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass(frozen=True)
class DeletionRequest:
    """A single-use account deletion token, returned once to the caller.

    Only HMAC(token) is persisted, alongside an explicit expiry timestamp.
    """

    token: str
    expires_in: int
