"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL. This is the actual
  SQL-injection defense; the sanitizer's keyword filter is only a second layer.

  UNIQUE(email) backs the duplicate-signup check. A concurrent signup that
  slips past the route's find_by_email() surfaces as IntegrityError from
  create(), which the route maps to 409.

Timestamps are stored as ISO 8601 UTC strings and mapped to aware datetimes.
Ids are opaque UUID4 strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(254), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("name", String(255)),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("verification_token", String(128), index=True),
    Column("token_expires_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
)

# Columns update() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = frozenset(
    {"name", "hashed_password", "email_verified", "verification_token", "token_expires_at", "last_login_at"}
)
_DATETIME_FIELDS = frozenset({"token_expires_at", "last_login_at"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by a signup write."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore("sqlite:///users.db")
        user = store.create(User(email="a@b.com", hashed_password=hash_password("...")))
        store.find_by_email("A@B.com")  # case-insensitive
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-folded, trimmed). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_verification_token(self, token: str) -> User | None:
        if not token:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.verification_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, user: User) -> User:
        """Insert a new user and return the stored record.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now()
        user_id = user.id or str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    name=user.name,
                    email_verified=user.email_verified,
                    verification_token=user.verification_token,
                    token_expires_at=_to_iso(user.token_expires_at),
                    created_at=_to_iso(now),
                    updated_at=_to_iso(now),
                )
            )
            conn.commit()
        return User(
            id=user_id,
            email=normalize_email(user.email),
            hashed_password=user.hashed_password,
            name=user.name,
            email_verified=user.email_verified,
            verification_token=user.verification_token,
            token_expires_at=user.token_expires_at,
            created_at=now,
            updated_at=now,
        )

    def update(self, user_id: str, **fields) -> User | None:
        """Update mutable fields and stamp updated_at.

        Accepted fields: name, hashed_password, email_verified,
        verification_token, token_expires_at, last_login_at. Unknown keys
        raise ValueError rather than silently ignoring them.

        Returns the updated User, or None if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values = {k: (_to_iso(v) if k in _DATETIME_FIELDS else v) for k, v in fields.items()}
        values["updated_at"] = _to_iso(_now())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.find_by_id(user_id)

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC time as last_login_at after a successful login."""
        self.update(user_id, last_login_at=_now())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        name=row.name,
        email_verified=bool(row.email_verified),
        verification_token=row.verification_token,
        token_expires_at=_from_iso(row.token_expires_at),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        last_login_at=_from_iso(row.last_login_at),
    )
