"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository for users,
user_sessions and activity_logs; _row_to_user / _row_to_session are the
mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  exists() is the only method that takes a table and column *name*. Both are
  resolved against the SQLAlchemy MetaData below and rejected with ValueError
  when unknown, so identifiers never reach SQL from user input.

Concurrency:
  record_failed_login() increments the attempt counter with a single UPDATE
  (login_attempts = login_attempts + 1) and sets locked_until in the same
  statement. Two simultaneous failures are both counted; there is no
  read-modify-write window.

  users.email carries a UNIQUE constraint. The registration validator checks
  uniqueness first for a friendly message; the constraint closes the race
  between two concurrent registrations for the same address.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (see format_ts) so string
  comparison in SQL orders them chronologically.

Layer rule: no imports from api/ or leads/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import ActivityLogEntry, User, UserSession
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("phone", String(20)),
    Column("company", String(100)),
    Column("position", String(100)),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("reset_token", String(64)),  # HMAC-SHA256 hex of the raw token
    Column("reset_expires", String(32)),
    Column("verification_token", String(64)),
    Column("remember_token", String(64)),  # HMAC-SHA256 hex of the raw token
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", String(128), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_activity = Table(
    "activity_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("action", String(50), nullable=False),
    Column("entity_type", String(50)),
    Column("entity_id", Integer),
    Column("description", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)

# Columns update_profile() may touch. Anything else is rejected.
_PROFILE_FIELDS: frozenset[str] = frozenset({"first_name", "last_name", "phone", "company", "position"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_ts(dt: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO 8601 string.

    timespec="microseconds" keeps the width constant (plain isoformat() drops
    the fraction when it is zero), which keeps SQL string comparison correct.
    """
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return format_ts(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, their sessions and their activity log.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="ana@x.com", first_name="Ana", last_name="Lee",
                                     hashed_password=hash_password("secret123")))
        user = store.get_by_email("ana@x.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    first_name=user.first_name,
                    last_name=user.last_name,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    phone=user.phone,
                    company=user.company,
                    position=user.position,
                    role=user.role,
                    status=user.status,
                    verification_token=user.verification_token,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def exists(self, table: str, column: str, value, ignore_id: int | None = None) -> bool:
        """Return True if any row in table has column == value.

        ignore_id excludes one row by primary key (e.g. the user's own record
        when re-validating their email on a profile edit).

        Raises ValueError for a table or column not defined in this store.
        """
        tbl = _metadata.tables.get(table)
        if tbl is None or column not in tbl.c:
            raise ValueError(f"Unknown column for existence check: {table}.{column}")
        query = select(tbl.c.id).where(tbl.c[column] == value)
        if ignore_id is not None:
            query = query.where(tbl.c.id != ignore_id)
        with self.engine.connect() as conn:
            row = conn.execute(query.limit(1)).first()
        return row is not None

    def update_profile(self, user_id: int, **fields) -> bool:
        """Update profile columns. Returns True if a row was updated.

        Only first_name, last_name, phone, company and position are accepted.
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)!r}")
        if not fields:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def set_status(self, user_id: int, status: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(status=status, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout bookkeeping
    # ------------------------------------------------------------------

    def record_failed_login(self, user_id: int, max_attempts: int, lock_until: str) -> int:
        """Count one failed login and return the new attempt total.

        The increment and the lock decision happen in one UPDATE: every
        right-hand side reads the pre-update row, so the CASE compares the
        incremented value against max_attempts. locked_until is only written
        once the threshold is reached.
        """
        next_attempts = _users.c.login_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    login_attempts=next_attempts,
                    locked_until=case(
                        (next_attempts >= max_attempts, lock_until),
                        else_=_users.c.locked_until,
                    ),
                )
            )
            attempts = conn.execute(select(_users.c.login_attempts).where(_users.c.id == user_id)).scalar()
        return attempts or 0

    def record_successful_login(self, user_id: int, when: str) -> None:
        """Clear the attempt counter and any lock, and stamp last_login."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(login_attempts=0, locked_until=None, last_login=when)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Remember-me and password-reset tokens (hashes only)
    # ------------------------------------------------------------------

    def set_remember_token(self, user_id: int, token_hash: str | None) -> None:
        """Store (or clear, with None) the user's remember-me token hash."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(remember_token=token_hash))
            conn.commit()

    def get_by_remember_token(self, token_hash: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.remember_token == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_reset_token(self, user_id: int, token_hash: str, expires: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(reset_token=token_hash, reset_expires=expires)
            )
            conn.commit()

    def get_by_reset_token(self, token_hash: str, now: str) -> User | None:
        """Return the active user whose unexpired reset token matches, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.reset_token == token_hash)
                    & (_users.c.reset_expires > now)
                    & (_users.c.status == "active")
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def consume_reset_token(self, user_id: int, token_hash: str, hashed_password: str) -> bool:
        """Set the new password and clear the token in one conditional UPDATE.

        The WHERE clause repeats the token match, so of two concurrent resets
        with the same token only one updates a row. Returns True if it won.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.reset_token == token_hash))
                .values(
                    hashed_password=hashed_password,
                    reset_token=None,
                    reset_expires=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: UserSession) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=session.created_at or _now_iso(),
                    expires_at=session.expires_at,
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> UserSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    def purge_expired_sessions(self, now: str | None = None) -> int:
        """Delete every session whose expires_at has passed. Returns rows removed."""
        cutoff = now or _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def log_activity(self, entry: ActivityLogEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _activity.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    description=entry.description,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    created_at=entry.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def recent_activity(self, user_id: int, limit: int = 10) -> list[ActivityLogEntry]:
        """Return the user's newest activity entries first (dashboard feed)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _activity.select()
                .where(_activity.c.user_id == user_id)
                .order_by(_activity.c.created_at.desc(), _activity.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_activity(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        hashed_password=row.hashed_password,
        phone=row.phone,
        company=row.company,
        position=row.position,
        role=row.role,
        status=row.status,
        login_attempts=row.login_attempts or 0,
        locked_until=row.locked_until,
        reset_token=row.reset_token,
        reset_expires=row.reset_expires,
        verification_token=row.verification_token,
        remember_token=row.remember_token,
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> UserSession:
    return UserSession(
        id=row.id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _row_to_activity(row) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        description=row.description,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
