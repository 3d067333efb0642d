"""
auth/store.py -- SQLAlchemy Core persistence for the user directory.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are normalized (lowercase, stripped) before every write and lookup,
  so "A@B.com " and "a@b.com" are the same account.

Concurrency:
  email is UNIQUE. Two passwordless requests for a brand-new address can race
  to create the user; the loser gets IntegrityError and re-reads the winner's
  row (see get_or_create_by_email).

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("hashed_password", Text),  # NULL for passwordless-only users
    Column("role", String(30), nullable=False, server_default="customer"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("avatar_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

# Fields update_user() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = {
    "first_name",
    "last_name",
    "hashed_password",
    "role",
    "email_verified",
    "last_login",
    "avatar_url",
    "is_active",
}


# ---------------------------------------------------------------------------
# Engine helpers (shared with token_store and audit)
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL for concurrent reads; set per-connection, PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite conveniences every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and "mode=memory" not in db_url and ":memory:" not in db_url:
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///tokenward.db")
        uid = store.create_user(User(email="a@b.com"))
        user = store.get_by_email("A@B.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    first_name=user.first_name,
                    last_name=user.last_name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    email_verified=1 if user.email_verified else 0,
                    last_login=user.last_login,
                    avatar_url=user.avatar_url,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_or_create_by_email(self, email: str) -> tuple[User, bool]:
        """Return (user, created). New users start unverified with the default role."""
        existing = self.get_by_email(email)
        if existing is not None:
            return existing, False
        try:
            user_id = self.create_user(User(email=email, email_verified=False))
        except IntegrityError:
            # A concurrent request created it between our read and insert.
            winner = self.get_by_email(email)
            if winner is None:
                raise
            return winner, False
        return self.get_by_id(user_id), True

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Booleans are converted to int for SQLite. Returns True if a row was
        updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("email_verified", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def mark_verified_login(self, user_id: int) -> None:
        """Set email_verified and stamp last_login in one write."""
        self.update_user(user_id, email_verified=True, last_login=_now_iso())

    def update_last_login(self, user_id: int) -> None:
        self.update_user(user_id, last_login=_now_iso())

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        role=row.role,
        email_verified=bool(row.email_verified),
        last_login=row.last_login,
        avatar_url=row.avatar_url,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
