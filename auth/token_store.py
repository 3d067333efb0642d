"""
auth/token_store.py -- SQLAlchemy Core persistence for refresh tokens.

Pattern: Repository + Data Mapper (same as auth/store.py).

Every issued refresh token is one row. Rows are never updated except to flip
is_revoked from 0 to 1, and never deleted except by purge_expired(). A
rotation writes a new row whose parent_token_id points at the row it
replaced, so each login produces a singly-linked chain of rows.

Timestamps are stored as fixed-width UTC ISO-8601 strings (microsecond
precision, "+00:00" suffix). Fixed width means string comparison in SQL is
chronological comparison, which list_active_for_user() and purge_expired()
rely on.

Concurrency:
  revoke() and revoke_and_replace() only touch rows WHERE is_revoked = 0.
  Two requests rotating the same token both issue that UPDATE; the database
  lets exactly one of them match the row. revoke_and_replace() runs the
  UPDATE and the child INSERT in one transaction, so the loser sees either
  nothing (still running) or the revoked row AND its child (committed) --
  never a revoked row without its child.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select, text
from sqlalchemy.engine import Engine

from auth.models import DeviceInfo, RefreshToken
from auth.store import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("lookup_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("token_hash", String(60), nullable=False),  # bcrypt
    Column("device_info", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("parent_token_id", String(36)),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_user_active", "user_id", "is_revoked"),
    Index("ix_refresh_tokens_parent", "parent_token_id"),
    Index("ix_refresh_tokens_expires", "expires_at"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for RefreshToken rows.

    Usage:
        store = RefreshTokenStore("sqlite:///tokenward.db")
        record = store.create(user_id, lookup, digest, expires_at, device)
        store.find_by_hash(lookup)
        store.revoke(record.id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: int,
        lookup_hash: str,
        token_hash: str,
        expires_at: datetime,
        device: DeviceInfo | None = None,
        parent_token_id: str | None = None,
    ) -> RefreshToken:
        """Insert a new active token and return it with its generated id."""
        values = _insert_values(user_id, lookup_hash, token_hash, expires_at, device, parent_token_id)
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**values))
            conn.commit()
        return _values_to_token(values)

    def revoke(self, token_id: str) -> bool:
        """Revoke one token. Idempotent: revoked_at is written only on the first call.

        Returns True if this call flipped the flag, False if the token was
        already revoked or does not exist.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_at=_iso(_utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_and_replace(
        self,
        old: RefreshToken,
        lookup_hash: str,
        token_hash: str,
        expires_at: datetime,
        device: DeviceInfo | None = None,
    ) -> RefreshToken | None:
        """Revoke old and insert its child in a single transaction.

        Order inside the transaction is revoke first, then create. Returns the
        child, or None when the conditional revoke matched no row -- another
        request revoked old first, and nothing was written by this call.
        """
        values = _insert_values(old.user_id, lookup_hash, token_hash, expires_at, device, old.id)
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == old.id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_at=_iso(_utcnow()))
            )
            if result.rowcount != 1:
                return None
            conn.execute(_refresh_tokens.insert().values(**values))
        return _values_to_token(values)

    def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every unrevoked token of user_id. Returns the number revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_at=_iso(_utcnow()))
            )
            conn.commit()
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete rows past expires_at. Returns number of rows removed.

        Revoked-but-unexpired rows are kept: they are the evidence reuse
        detection needs until the token would have expired anyway.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _iso(_utcnow())))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_hash(self, lookup_hash: str) -> RefreshToken | None:
        """Look up a token by its HMAC index. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.lookup_hash == lookup_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_by_id(self, token_id: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def count_children_of(self, token_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.parent_token_id == token_id)
            ).scalar()
        return result or 0

    def list_active_for_user(self, user_id: int) -> list[RefreshToken]:
        """Unrevoked, unexpired tokens of user_id, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > _iso(_utcnow()))
                )
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _insert_values(
    user_id: int,
    lookup_hash: str,
    token_hash: str,
    expires_at: datetime,
    device: DeviceInfo | None,
    parent_token_id: str | None,
) -> dict:
    device = device or DeviceInfo()
    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "lookup_hash": lookup_hash,
        "token_hash": token_hash,
        "device_info": device.device_type or device.user_agent,
        "ip_address": device.ip,
        "user_agent": device.user_agent,
        "expires_at": _iso(expires_at),
        "is_revoked": 0,
        "revoked_at": None,
        "parent_token_id": parent_token_id,
        "created_at": _iso(_utcnow()),
    }


def _values_to_token(values: dict) -> RefreshToken:
    return RefreshToken(
        id=values["id"],
        user_id=values["user_id"],
        lookup_hash=values["lookup_hash"],
        token_hash=values["token_hash"],
        device_info=values["device_info"],
        ip_address=values["ip_address"],
        user_agent=values["user_agent"],
        expires_at=_parse(values["expires_at"]),
        is_revoked=bool(values["is_revoked"]),
        revoked_at=_parse(values["revoked_at"]),
        parent_token_id=values["parent_token_id"],
        created_at=_parse(values["created_at"]),
    )


def _row_to_token(row) -> RefreshToken:
    return _values_to_token(row._mapping)
