"""
cache/store.py -- Key-value store with per-key expiry for short-lived auth state.

Holds passwordless credentials (magic-link payloads keyed by token hash,
OTP codes keyed by email) and rate-limit counters. Nothing here must survive
a restart; the durable state lives in auth/token_store.py.

Two backends with one contract:

  SQLiteEphemeralStore -- default, zero extra infrastructure. pop(),
      add() and increment() run under BEGIN IMMEDIATE, so they stay atomic
      across processes sharing one database file.

  RedisEphemeralStore -- for multi-process deployments. SET EX, GETDEL and
      INCR are atomic on the server.

Lifecycle is explicit: construct, connect(), use, close(). The owning
process (see auth/services.py) decides when that happens; nothing here is a
module-level singleton.

Usage:
    store = SQLiteEphemeralStore(":memory:")
    store.connect()
    store.set("auth:otp:a@b.com", "045123", ttl_seconds=300)
    store.pop("auth:otp:a@b.com")      # "045123", and the key is gone
    store.increment("ratelimit:x", 900) # 1, expiry starts now
    store.close()

Layer rule: stdlib + redis only. No imports from api/, auth/, or core/.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import redis

logger = logging.getLogger("tokenward.cache")

_DDL = """
CREATE TABLE IF NOT EXISTS ephemeral (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class EphemeralStoreError(Exception):
    """The backing store could not be reached or rejected the operation."""


class SQLiteEphemeralStore:
    def __init__(self, db_path: str = "tokenward_ephemeral.db", *, busy_timeout: float = 5.0) -> None:
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, check_same_thread=False)
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_DDL)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise EphemeralStoreError(f"cannot open ephemeral store at {self.db_path}") from exc
        logger.info("Ephemeral store connected (sqlite: %s)", self.db_path)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise EphemeralStoreError("ephemeral store is not connected")
        return self._conn

    def ping(self) -> bool:
        try:
            with self._lock:
                self.conn.execute("SELECT 1").fetchone()
            return True
        except (sqlite3.Error, EphemeralStoreError):
            return False

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store value under key, replacing any existing entry and its expiry."""
        payload = json.dumps(value)
        with self._lock, self._guard():
            self.conn.execute(
                "INSERT OR REPLACE INTO ephemeral (key, value, expires_at) VALUES (?, ?, ?)",
                (key, payload, time.time() + ttl_seconds),
            )
            self.conn.commit()

    def add(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store value only if key holds no live entry. Returns True if stored."""
        payload = json.dumps(value)
        now = time.time()
        with self._immediate() as conn:
            conn.execute("DELETE FROM ephemeral WHERE key = ? AND expires_at <= ?", (key, now))
            cursor = conn.execute(
                "INSERT OR IGNORE INTO ephemeral (key, value, expires_at) VALUES (?, ?, ?)",
                (key, payload, now + ttl_seconds),
            )
            return cursor.rowcount == 1

    def get(self, key: str) -> Any:
        """Return the value for key, or None if it is absent or expired."""
        with self._lock, self._guard():
            return self._get_live(key)

    def pop(self, key: str) -> Any:
        """Atomically read and delete key. Returns None if absent or expired.

        The DELETE is the consume step: only the caller whose DELETE removed
        the row gets the value, even with several connections on one file.
        """
        with self._immediate() as conn:
            row = conn.execute("SELECT value, expires_at FROM ephemeral WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            cursor = conn.execute("DELETE FROM ephemeral WHERE key = ?", (key,))
            if cursor.rowcount != 1 or row[1] <= time.time():
                return None
            return json.loads(row[0])

    def delete(self, key: str) -> None:
        with self._lock, self._guard():
            self.conn.execute("DELETE FROM ephemeral WHERE key = ?", (key,))
            self.conn.commit()

    def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter. The expiry is set on the first increment only."""
        now = time.time()
        with self._immediate() as conn:
            row = conn.execute("SELECT value, expires_at FROM ephemeral WHERE key = ?", (key,)).fetchone()
            if row is None or row[1] <= now:
                count = 1
                conn.execute(
                    "INSERT OR REPLACE INTO ephemeral (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, json.dumps(count), now + ttl_seconds),
                )
            else:
                count = int(json.loads(row[0])) + 1
                conn.execute("UPDATE ephemeral SET value = ? WHERE key = ?", (json.dumps(count), key))
            return count

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock, self._guard():
            cursor = self.conn.execute("DELETE FROM ephemeral WHERE expires_at <= ?", (time.time(),))
            self.conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # Caller must hold self._lock.
    def _get_live(self, key: str) -> Any:
        row = self.conn.execute("SELECT value, expires_at FROM ephemeral WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if expires_at <= time.time():
            self.conn.execute("DELETE FROM ephemeral WHERE key = ?", (key,))
            self.conn.commit()
            return None
        return json.loads(value)

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """Hold the instance lock and the database write lock for the block.

        BEGIN IMMEDIATE serialises read-modify-write sequences across every
        connection to the same file, not just threads sharing this instance.
        """
        with self._lock, self._guard():
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def _guard(self):
        return _TranslateErrors(self._conn)


class _TranslateErrors:
    """Context manager: roll back and re-raise sqlite3 errors as EphemeralStoreError."""

    def __init__(self, conn: Optional[sqlite3.Connection]) -> None:
        self._conn = conn

    def __enter__(self) -> None:
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and issubclass(exc_type, sqlite3.Error):
            if self._conn is not None:
                self._conn.rollback()
            raise EphemeralStoreError(str(exc)) from exc
        return False


class RedisEphemeralStore:
    """Redis-backed store. Values are JSON-encoded strings."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Optional[redis.Redis] = None) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._client = client

    def connect(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        try:
            self._client.ping()
        except redis.RedisError as exc:
            raise EphemeralStoreError("cannot reach redis") from exc
        logger.info("Ephemeral store connected (redis)")

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise EphemeralStoreError("ephemeral store is not connected")
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (redis.RedisError, EphemeralStoreError):
            return False

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self.client.set(key, json.dumps(value), ex=ttl_seconds)
        except redis.RedisError as exc:
            raise EphemeralStoreError(str(exc)) from exc

    def add(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            return bool(self.client.set(key, json.dumps(value), ex=ttl_seconds, nx=True))
        except redis.RedisError as exc:
            raise EphemeralStoreError(str(exc)) from exc

    def get(self, key: str) -> Any:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise EphemeralStoreError(str(exc)) from exc
        return None if raw is None else json.loads(raw)

    def pop(self, key: str) -> Any:
        """GETDEL (Redis 6.2+) -- a single atomic command."""
        try:
            raw = self.client.getdel(key)
        except redis.RedisError as exc:
            raise EphemeralStoreError(str(exc)) from exc
        return None if raw is None else json.loads(raw)

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise EphemeralStoreError(str(exc)) from exc

    def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            count = int(self.client.incr(key))
            if count == 1:
                self.client.expire(key, ttl_seconds)
        except redis.RedisError as exc:
            raise EphemeralStoreError(str(exc)) from exc
        return count

    def purge_expired(self) -> int:
        # Redis expires keys itself.
        return 0

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
