"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; the _row_to_* functions are the mappers.
Route, guard and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider_name, provider_id) on connections is enforced in SQL. It is
  the backstop for concurrent provider callbacks: the loser's insert raises
  IntegrityError, which create_connection() reports as StorageConflict.

  audit_logs is insert-only. There is no update or delete method for it.

Transactions:
  Every write method takes an optional `conn`. Without one the method runs in
  its own transaction; with one it joins the caller's transaction opened via
  transaction(), so multi-row writes (connection + session + audit) commit or
  roll back together.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection as SAConnection
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import StorageConflict
from auth.models import (
    AuditLogEntry,
    Connection,
    Permission,
    Role,
    SessionRecord,
    User,
    VerificationSession,
)
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),  # stored lowercased
    Column("email", String(255), nullable=False, unique=True),  # stored lowercased
    Column("name", String(255)),
    Column("image_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_passwords = Table(
    "passwords",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("hash", Text, nullable=False),
)

_connections = Table(
    "connections",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_name", String(50), nullable=False),
    Column("provider_id", String(255), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider_name", "provider_id", name="uq_connections_provider"),
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
    Column("entity", String(100), nullable=False),
    Column("action", String(20), nullable=False),  # create / read / update / delete
    Column("access", String(10), nullable=False),  # own / any
    Column("description", Text, nullable=False, server_default=""),
    UniqueConstraint("entity", "action", "access", name="uq_permissions_triple"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id"), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # assignment order
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_roles"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),  # secrets.token_urlsafe(32)
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("remember", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_verifications = Table(
    "verifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(30), nullable=False),  # onboarding / reset-password
    Column("target", String(255), nullable=False),  # email or username
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("attempts", Integer, nullable=False, server_default="0"),  # wrong guesses so far
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    UniqueConstraint("type", "target", name="uq_verifications_target_type"),
)

_verification_sessions = Table(
    "verification_sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("purpose", String(30), nullable=False),
    Column("data", Text, nullable=False),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("action", String(30), nullable=False),
    Column("entity", String(100), nullable=False),
    Column("details", Text),  # JSON object or NULL
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    PRAGMAs are per-connection in SQLite and are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for every identity entity: users, credentials, connections,
    roles, sessions, verifications and audit rows.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="admin", email="admin@example.org"), password_hash=h)
        user = store.get_by_username("Admin")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[SAConnection]:
        """Open a transaction that store methods can join via their `conn` argument.

        Commits on normal exit, rolls back if the block raises.
        """
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _scope(self, conn: SAConnection | None) -> Iterator[SAConnection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        user: User,
        password_hash: str | None = None,
        role_names: tuple[str, ...] | list[str] = ("user",),
        conn: SAConnection | None = None,
    ) -> int:
        """Insert a user (plus optional password and roles) and return its ID.

        username and email are lowercased. Raises sqlalchemy.exc.IntegrityError
        if either already exists -- callers turn that into a field error.
        Raises ValueError for an unknown role name.
        """
        now = _now_iso()
        with self._scope(conn) as c:
            result = c.execute(
                _users.insert().values(
                    username=user.username.strip().lower(),
                    email=user.email.strip().lower(),
                    name=user.name,
                    image_url=user.image_url,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            if password_hash is not None:
                c.execute(_passwords.insert().values(user_id=user_id, hash=password_hash))
            self._assign_roles(c, user_id, role_names)
        return user_id

    def get_by_id(self, user_id: int, conn: SAConnection | None = None) -> User | None:
        """Look up a user by primary key, roles and permissions loaded."""
        return self._get_user(_users.c.id == user_id, conn)

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive username lookup."""
        return self._get_user(func.lower(_users.c.username) == username.strip().lower())

    def get_by_email(self, email: str, conn: SAConnection | None = None) -> User | None:
        """Case-insensitive email lookup."""
        return self._get_user(func.lower(_users.c.email) == email.strip().lower(), conn)

    def list_users(self) -> list[User]:
        """Return all users ordered by username, roles loaded."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
            roles = self._load_roles(conn, [r.id for r in rows])
        return [_row_to_user(r, roles.get(r.id, [])) for r in rows]

    def _get_user(self, clause, conn: SAConnection | None = None) -> User | None:
        with self._scope(conn) as c:
            row = c.execute(_users.select().where(clause)).fetchone()
            if row is None:
                return None
            roles = self._load_roles(c, [row.id])
        return _row_to_user(row, roles.get(row.id, []))

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_password_hash(self, user_id: int) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(select(_passwords.c.hash).where(_passwords.c.user_id == user_id)).scalar()

    def set_password(self, user_id: int, password_hash: str, conn: SAConnection | None = None) -> None:
        """Create or replace the user's password hash."""
        with self._scope(conn) as c:
            result = c.execute(_passwords.update().where(_passwords.c.user_id == user_id).values(hash=password_hash))
            if result.rowcount == 0:
                c.execute(_passwords.insert().values(user_id=user_id, hash=password_hash))
            c.execute(_users.update().where(_users.c.id == user_id).values(updated_at=_now_iso()))

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get_connection(
        self, provider_name: str, provider_id: str, conn: SAConnection | None = None
    ) -> Connection | None:
        with self._scope(conn) as c:
            row = c.execute(
                _connections.select().where(
                    (_connections.c.provider_name == provider_name) & (_connections.c.provider_id == provider_id)
                )
            ).fetchone()
        return _row_to_connection(row) if row is not None else None

    def list_connections(self, user_id: int) -> list[Connection]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _connections.select().where(_connections.c.user_id == user_id).order_by(_connections.c.id)
            ).fetchall()
        return [_row_to_connection(r) for r in rows]

    def count_connections(self, provider_name: str, provider_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(_connections)
                .where((_connections.c.provider_name == provider_name) & (_connections.c.provider_id == provider_id))
            ).scalar()

    def create_connection(
        self, provider_name: str, provider_id: str, user_id: int, conn: SAConnection | None = None
    ) -> Connection:
        """Insert a connection. Raises StorageConflict if the identity is already linked.

        The UNIQUE(provider_name, provider_id) constraint makes find-or-create a
        single atomic step: there is no read-then-write window to race through.
        """
        now = _now_iso()
        try:
            with self._scope(conn) as c:
                result = c.execute(
                    _connections.insert().values(
                        provider_name=provider_name,
                        provider_id=provider_id,
                        user_id=user_id,
                        created_at=now,
                    )
                )
        except IntegrityError as exc:
            raise StorageConflict(f"connection {provider_name}:{provider_id} already exists") from exc
        return Connection(
            id=result.inserted_primary_key[0],
            provider_name=provider_name,
            provider_id=provider_id,
            user_id=user_id,
            created_at=now,
        )

    def delete_connection(self, connection_id: int, user_id: int) -> bool:
        """Remove a connection. user_id is checked so nobody unlinks another user's identity."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _connections.delete().where((_connections.c.id == connection_id) & (_connections.c.user_id == user_id))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def ensure_permission(self, entity: str, action: str, access: str, description: str = "") -> int:
        """Return the ID of the (entity, action, access) permission, creating it if needed."""
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(_permissions.c.id).where(
                    (_permissions.c.entity == entity)
                    & (_permissions.c.action == action)
                    & (_permissions.c.access == access)
                )
            ).scalar()
            if existing is not None:
                return existing
            result = conn.execute(
                _permissions.insert().values(entity=entity, action=action, access=access, description=description)
            )
            return result.inserted_primary_key[0]

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.id)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def create_role(self, name: str, description: str = "", permission_ids: list[int] | None = None) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_roles.insert().values(name=name, description=description or name))
            role_id = result.inserted_primary_key[0]
            for pid in permission_ids or []:
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=pid))
        return role_id

    def get_role(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
            if row is None:
                return None
            perms = self._load_role_permissions(conn, [row.id])
        return Role(id=row.id, name=row.name, description=row.description, permissions=perms.get(row.id, []))

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            perms = self._load_role_permissions(conn, [r.id for r in rows])
        return [Role(id=r.id, name=r.name, description=r.description, permissions=perms.get(r.id, [])) for r in rows]

    def set_user_roles(self, user_id: int, role_names: list[str], conn: SAConnection | None = None) -> None:
        """Replace the user's role assignments, keeping the given order."""
        with self._scope(conn) as c:
            c.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            self._assign_roles(c, user_id, role_names)

    def _assign_roles(self, conn: SAConnection, user_id: int, role_names) -> None:
        for name in dict.fromkeys(role_names):
            role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar()
            if role_id is None:
                raise ValueError(f"Unknown role: {name!r}")
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))

    def _load_roles(self, conn: SAConnection, user_ids: list[int]) -> dict[int, list[Role]]:
        if not user_ids:
            return {}
        rows = conn.execute(
            select(_user_roles.c.user_id, _roles.c.id, _roles.c.name, _roles.c.description)
            .join(_roles, _roles.c.id == _user_roles.c.role_id)
            .where(_user_roles.c.user_id.in_(user_ids))
            .order_by(_user_roles.c.id)
        ).fetchall()
        perms = self._load_role_permissions(conn, list({r.id for r in rows}))
        result: dict[int, list[Role]] = {}
        for r in rows:
            result.setdefault(r.user_id, []).append(
                Role(id=r.id, name=r.name, description=r.description, permissions=perms.get(r.id, []))
            )
        return result

    def _load_role_permissions(self, conn: SAConnection, role_ids: list[int]) -> dict[int, list[Permission]]:
        if not role_ids:
            return {}
        rows = conn.execute(
            select(_role_permissions.c.role_id, _permissions)
            .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            .where(_role_permissions.c.role_id.in_(role_ids))
            .order_by(_permissions.c.id)
        ).fetchall()
        result: dict[int, list[Permission]] = {}
        for r in rows:
            result.setdefault(r.role_id, []).append(_row_to_permission(r))
        return result

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, record: SessionRecord, conn: SAConnection | None = None) -> None:
        with self._scope(conn) as c:
            c.execute(
                _sessions.insert().values(
                    id=record.id,
                    user_id=record.user_id,
                    remember=record.remember,
                    created_at=record.created_at or _now_iso(),
                    expires_at=record.expires_at,
                )
            )

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def count_sessions(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_sessions).where(_sessions.c.user_id == user_id)
            ).scalar()

    def delete_session(self, session_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int, conn: SAConnection | None = None) -> int:
        """Drop every session of a user (after a password reset)."""
        with self._scope(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired_sessions(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < _now_iso()))
        return result.rowcount

    # ------------------------------------------------------------------
    # One-time verification codes
    # ------------------------------------------------------------------

    def upsert_verification(self, type_: str, target: str, code_hash: str, expires_at: str) -> None:
        """Store the code for (type, target), replacing any code issued before."""
        with self.engine.begin() as conn:
            conn.execute(
                _verifications.delete().where((_verifications.c.type == type_) & (_verifications.c.target == target))
            )
            conn.execute(
                _verifications.insert().values(
                    type=type_,
                    target=target,
                    code_hash=code_hash,
                    created_at=_now_iso(),
                    expires_at=expires_at,
                )
            )

    def get_verification(self, type_: str, target: str) -> tuple[str, str] | None:
        """Return (code_hash, expires_at) or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_verifications.c.code_hash, _verifications.c.expires_at).where(
                    (_verifications.c.type == type_) & (_verifications.c.target == target)
                )
            ).fetchone()
        return (row.code_hash, row.expires_at) if row is not None else None

    def record_failed_verification(self, type_: str, target: str) -> int:
        """Count one wrong guess against the code for (type, target). Returns the new total."""
        where = (_verifications.c.type == type_) & (_verifications.c.target == target)
        with self.engine.begin() as conn:
            conn.execute(_verifications.update().where(where).values(attempts=_verifications.c.attempts + 1))
            attempts = conn.execute(select(_verifications.c.attempts).where(where)).scalar()
        return attempts or 0

    def delete_verification(self, type_: str, target: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _verifications.delete().where((_verifications.c.type == type_) & (_verifications.c.target == target))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Verification sessions
    # ------------------------------------------------------------------

    def create_verification_session(self, vs: VerificationSession) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _verification_sessions.insert().values(
                    id=vs.id,
                    purpose=vs.purpose,
                    data=json.dumps(vs.data),
                    created_at=vs.created_at or _now_iso(),
                    expires_at=vs.expires_at,
                )
            )

    def get_verification_session(self, vs_id: str) -> VerificationSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(_verification_sessions.select().where(_verification_sessions.c.id == vs_id)).fetchone()
        return _row_to_verification_session(row) if row is not None else None

    def delete_verification_session(self, vs_id: str, conn: SAConnection | None = None) -> bool:
        """Delete a verification session. Returns True only for the caller that removed the row."""
        with self._scope(conn) as c:
            result = c.execute(_verification_sessions.delete().where(_verification_sessions.c.id == vs_id))
        return result.rowcount > 0

    def purge_expired_verifications(self) -> int:
        now = _now_iso()
        with self.engine.begin() as conn:
            a = conn.execute(_verification_sessions.delete().where(_verification_sessions.c.expires_at < now))
            b = conn.execute(_verifications.delete().where(_verifications.c.expires_at < now))
        return a.rowcount + b.rowcount

    # ------------------------------------------------------------------
    # Audit log (insert-only)
    # ------------------------------------------------------------------

    def insert_audit_log(self, entry: AuditLogEntry, conn: SAConnection | None = None) -> int:
        with self._scope(conn) as c:
            result = c.execute(
                _audit_logs.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    entity=entry.entity,
                    details=json.dumps(entry.details) if entry.details is not None else None,
                    created_at=entry.created_at or _now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_audit_logs(self, user_id: int | None = None, limit: int = 100) -> list[AuditLogEntry]:
        """Return audit rows newest first, optionally for a single user."""
        query = _audit_logs.select().order_by(_audit_logs.c.id.desc()).limit(limit)
        if user_id is not None:
            query = query.where(_audit_logs.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_log(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[Role]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        name=row.name,
        image_url=row.image_url,
        created_at=row.created_at,
        updated_at=row.updated_at,
        roles=roles,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        entity=row.entity,
        action=row.action,
        access=row.access,
        description=row.description,
    )


def _row_to_connection(row) -> Connection:
    return Connection(
        id=row.id,
        provider_name=row.provider_name,
        provider_id=row.provider_id,
        user_id=row.user_id,
        created_at=row.created_at,
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        remember=bool(row.remember),
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _row_to_verification_session(row) -> VerificationSession:
    return VerificationSession(
        id=row.id,
        purpose=row.purpose,
        data=json.loads(row.data),
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _row_to_audit_log(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        entity=row.entity,
        details=json.loads(row.details) if row.details else None,
        created_at=row.created_at,
    )
