"""
auth/store.py -- SQLAlchemy Core persistence layer for users, roles and permissions.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _load_roles are the mappers.
Service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Usernames are lowercased at every write and every lookup. The UNIQUE index
  on users.username is the backstop for the service's non-atomic pre-check:
  a concurrent duplicate insert surfaces as IntegrityError, which this store
  turns into ConflictError.

Schema:
  users            -- identity, bcrypt hash, HMAC digest of the live refresh token
  roles            -- named permission bundles
  permissions      -- atomic capabilities
  user_roles       -- many-to-many users <-> roles
  role_permissions -- many-to-many roles <-> permissions
  deletion_tokens  -- single-use account deletion tokens with explicit expiry

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, NotFoundError
from auth.models import Permission, Role, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("refresh_token_hash", String(64)),  # NULL = no bound session
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

_deletion_tokens = Table(
    "deletion_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("expires_at", Integer, nullable=False),  # unix epoch seconds
)

_USER_FIELDS = {"username", "hashed_password", "refresh_token_hash", "role_ids"}


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign-key enforcement on every new SQLite connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Without foreign_keys=ON the ON DELETE CASCADE
    clauses on the join tables are ignored.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def canonical_username(username: str) -> str:
    return username.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Role and Permission entities.

    Usage:
        store = UserStore()
        user = store.create_user("alice", hash_password("secret"), role_ids=[1])
        perms = store.resolve_user_permissions(user.id)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key, roles and permissions loaded. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, _load_roles(conn, _user_role_ids(conn, row.id)))

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username (case-insensitive). None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(_users.c.username == canonical_username(username))
            ).fetchone()
            if row is None:
                return None
            return _row_to_user(row, _load_roles(conn, _user_role_ids(conn, row.id)))

    def list_users(self, offset: int = 0, limit: int = 10) -> tuple[list[User], int]:
        """Return one page of users ordered by id, plus the total user count."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
            rows = conn.execute(_users.select().order_by(_users.c.id).offset(offset).limit(limit)).fetchall()
            if not rows:
                return [], total
            assignments = conn.execute(
                _user_roles.select().where(_user_roles.c.user_id.in_([r.id for r in rows]))
            ).fetchall()
            role_ids_by_user: dict[int, list[int]] = defaultdict(list)
            for a in assignments:
                role_ids_by_user[a.user_id].append(a.role_id)
            roles_by_id = {r.id: r for r in _load_roles(conn, {a.role_id for a in assignments})}
        return [
            _row_to_user(r, [roles_by_id[rid] for rid in sorted(role_ids_by_user[r.id])]) for r in rows
        ], total

    def create_user(self, username: str, hashed_password: str, role_ids: Iterable[int] | None = None) -> User:
        """Insert a new user and return it.

        Raises ConflictError if the username is taken (including a concurrent
        insert that won the race) and NotFoundError if a role id is unknown.
        """
        username = canonical_username(username)
        role_ids = _dedupe(role_ids)
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                _require_ids(conn, _roles, role_ids, "Role")
                result = conn.execute(
                    _users.insert().values(
                        username=username,
                        hashed_password=hashed_password,
                        created_at=now,
                        updated_at=now,
                    )
                )
                user_id = result.inserted_primary_key[0]
                if role_ids:
                    conn.execute(_user_roles.insert(), [{"user_id": user_id, "role_id": rid} for rid in role_ids])
        except IntegrityError as exc:
            raise ConflictError(f"Username '{username}' already exists.") from exc
        created = self.get_by_id(user_id)
        if created is None:
            raise NotFoundError("User not found after write.")
        return created

    def update_user(self, user_id: int, **fields) -> User:
        """Update mutable fields on an existing user and return the fresh record.

        Accepted fields: username, hashed_password, refresh_token_hash, role_ids.
        role_ids replaces the whole assignment set. Unknown keys raise
        ValueError rather than being silently ignored.
        """
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        role_ids = fields.pop("role_ids", None)
        if "username" in fields:
            fields["username"] = canonical_username(fields["username"])
        fields["updated_at"] = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
                if result.rowcount == 0:
                    raise NotFoundError("User not found.")
                if role_ids is not None:
                    role_ids = _dedupe(role_ids)
                    _require_ids(conn, _roles, role_ids, "Role")
                    conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
                    if role_ids:
                        conn.execute(
                            _user_roles.insert(), [{"user_id": user_id, "role_id": rid} for rid in role_ids]
                        )
        except IntegrityError as exc:
            raise ConflictError("A user with that username already exists.") from exc
        updated = self.get_by_id(user_id)
        if updated is None:
            raise NotFoundError("User not found.")
        return updated

    def delete_user(self, user_id: int) -> None:
        """Permanently delete a user with its role assignments and deletion tokens.

        Raises NotFoundError if the user does not exist.
        """
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            conn.execute(_deletion_tokens.delete().where(_deletion_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            if result.rowcount == 0:
                raise NotFoundError("User not found.")

    def resolve_user_permissions(self, user_id: int) -> set[str] | None:
        """Return the flattened permission names held by a user via their roles.

        Returns None if the user does not exist (distinct from an empty set,
        which means the user exists but holds no permissions). Always reads
        fresh from the database.
        """
        with self.engine.connect() as conn:
            exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone()
            if exists is None:
                return None
            rows = conn.execute(
                select(_permissions.c.name)
                .select_from(
                    _user_roles.join(_role_permissions, _role_permissions.c.role_id == _user_roles.c.role_id).join(
                        _permissions, _permissions.c.id == _role_permissions.c.permission_id
                    )
                )
                .where(_user_roles.c.user_id == user_id)
                .distinct()
            ).fetchall()
        return {r.name for r in rows}

    # ------------------------------------------------------------------
    # Role queries
    # ------------------------------------------------------------------

    def find_roles_by_ids(self, role_ids: Iterable[int]) -> list[Role]:
        """Return the roles (with permissions) whose ids are given. Unknown ids are skipped."""
        with self.engine.connect() as conn:
            return _load_roles(conn, _dedupe(role_ids))

    def get_role(self, role_id: int) -> Role | None:
        roles = self.find_roles_by_ids([role_id])
        return roles[0] if roles else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).fetchone()
            if row is None:
                return None
            return _load_roles(conn, [row.id])[0]

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            ids = conn.execute(select(_roles.c.id)).scalars().all()
            return _load_roles(conn, ids)

    def create_role(self, name: str, description: str = "", permission_ids: Iterable[int] | None = None) -> Role:
        """Insert a role. ConflictError on duplicate name, NotFoundError on unknown permission id."""
        permission_ids = _dedupe(permission_ids)
        try:
            with self.engine.begin() as conn:
                _require_ids(conn, _permissions, permission_ids, "Permission")
                result = conn.execute(_roles.insert().values(name=name, description=description))
                role_id = result.inserted_primary_key[0]
                if permission_ids:
                    conn.execute(
                        _role_permissions.insert(),
                        [{"role_id": role_id, "permission_id": pid} for pid in permission_ids],
                    )
        except IntegrityError as exc:
            raise ConflictError(f"Role '{name}' already exists.") from exc
        return self.get_role(role_id)

    def update_role(
        self,
        role_id: int,
        name: str | None = None,
        description: str | None = None,
        permission_ids: Iterable[int] | None = None,
    ) -> Role:
        """Update a role's fields; permission_ids replaces the whole permission set."""
        values = {}
        if name is not None:
            values["name"] = name
        if description is not None:
            values["description"] = description
        try:
            with self.engine.begin() as conn:
                if conn.execute(select(_roles.c.id).where(_roles.c.id == role_id)).fetchone() is None:
                    raise NotFoundError(f"Role with ID {role_id} not found.")
                if values:
                    conn.execute(_roles.update().where(_roles.c.id == role_id).values(**values))
                if permission_ids is not None:
                    permission_ids = _dedupe(permission_ids)
                    _require_ids(conn, _permissions, permission_ids, "Permission")
                    conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
                    if permission_ids:
                        conn.execute(
                            _role_permissions.insert(),
                            [{"role_id": role_id, "permission_id": pid} for pid in permission_ids],
                        )
        except IntegrityError as exc:
            raise ConflictError(f"Role '{name}' already exists.") from exc
        return self.get_role(role_id)

    def delete_role(self, role_id: int) -> None:
        """Delete a role and its assignments. NotFoundError if absent."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role_id))
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            if result.rowcount == 0:
                raise NotFoundError(f"Role with ID {role_id} not found.")

    # ------------------------------------------------------------------
    # Permission queries
    # ------------------------------------------------------------------

    def create_permission(self, name: str, description: str = "") -> Permission:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_permissions.insert().values(name=name, description=description))
        except IntegrityError as exc:
            raise ConflictError(f"Permission '{name}' already exists.") from exc
        return Permission(id=result.inserted_primary_key[0], name=name, description=description)

    def get_permission_by_name(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.id)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def find_permissions_by_ids(self, permission_ids: Iterable[int]) -> list[Permission]:
        ids = _dedupe(permission_ids)
        if not ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                _permissions.select().where(_permissions.c.id.in_(ids)).order_by(_permissions.c.id)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    # ------------------------------------------------------------------
    # Deletion tokens
    # ------------------------------------------------------------------

    def put_deletion_token(self, user_id: int, token_hash: str, expires_at: int) -> None:
        """Store a deletion token digest, replacing any outstanding token for the user."""
        with self.engine.begin() as conn:
            conn.execute(_deletion_tokens.delete().where(_deletion_tokens.c.user_id == user_id))
            conn.execute(_deletion_tokens.insert().values(token_hash=token_hash, user_id=user_id, expires_at=expires_at))

    def consume_deletion_token(self, user_id: int, token_hash: str, now: int) -> bool:
        """Atomically delete a matching unexpired token. True if one was consumed.

        The token_hash, user_id and expiry conditions are all in the WHERE
        clause, so a token is usable once, only by its owner, and only
        before expires_at.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _deletion_tokens.delete().where(
                    (_deletion_tokens.c.token_hash == token_hash)
                    & (_deletion_tokens.c.user_id == user_id)
                    & (_deletion_tokens.c.expires_at > now)
                )
            )
        return result.rowcount > 0

    def purge_expired_deletion_tokens(self, now: int) -> int:
        """Delete expired deletion tokens. Returns the number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_deletion_tokens.delete().where(_deletion_tokens.c.expires_at <= now))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def _dedupe(ids: Iterable[int] | None) -> list[int]:
    return sorted(set(ids)) if ids else []


def _require_ids(conn: Connection, table: Table, ids: list[int], label: str) -> None:
    """Raise NotFoundError unless every id exists in table."""
    if not ids:
        return
    found = set(conn.execute(select(table.c.id).where(table.c.id.in_(ids))).scalars().all())
    missing = sorted(set(ids) - found)
    if missing:
        raise NotFoundError(f"{label} id(s) not found: {missing}")


def _user_role_ids(conn: Connection, user_id: int) -> list[int]:
    return list(conn.execute(select(_user_roles.c.role_id).where(_user_roles.c.user_id == user_id)).scalars().all())


def _load_roles(conn: Connection, role_ids: Iterable[int]) -> list[Role]:
    """Load roles by id with their permissions in two queries, ordered by role id."""
    ids = _dedupe(role_ids)
    if not ids:
        return []
    role_rows = conn.execute(_roles.select().where(_roles.c.id.in_(ids)).order_by(_roles.c.id)).fetchall()
    perm_rows = conn.execute(
        select(_role_permissions.c.role_id, _permissions.c.id, _permissions.c.name, _permissions.c.description)
        .select_from(_role_permissions.join(_permissions, _permissions.c.id == _role_permissions.c.permission_id))
        .where(_role_permissions.c.role_id.in_(ids))
        .order_by(_permissions.c.id)
    ).fetchall()
    perms_by_role: dict[int, list[Permission]] = defaultdict(list)
    for r in perm_rows:
        perms_by_role[r.role_id].append(_row_to_permission(r))
    return [
        Role(id=r.id, name=r.name, description=r.description or "", permissions=perms_by_role[r.id])
        for r in role_rows
    ]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[Role]) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        refresh_token_hash=row.refresh_token_hash,
        roles=roles,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, name=row.name, description=row.description or "")
