"""Unit tests for cache/store.py -- the ephemeral key-value stores.

Covers:
- SQLite backend: set/get/delete, pop is read-and-delete, TTL expiry,
  increment only starts the window on the first call, purge_expired
- SQLite backend: use before connect() raises EphemeralStoreError
- SQLite backend: add() never clobbers a live key
- SQLite backend: several connections on one file redeem a key once and
  lose no increments
- Redis backend (mocked client): commands issued, JSON round trip,
  RedisError translated to EphemeralStoreError
"""

import threading
from unittest.mock import MagicMock

import pytest
import redis

from cache.store import EphemeralStoreError, RedisEphemeralStore, SQLiteEphemeralStore

# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = SQLiteEphemeralStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def clock(monkeypatch):
    """Controllable time.time() for the store module."""
    now = [1_000_000.0]
    monkeypatch.setattr("cache.store.time.time", lambda: now[0])
    return now


def test_set_get_delete(store):
    store.set("k", {"user_id": 1, "email": "a@b.com"}, ttl_seconds=60)
    assert store.get("k") == {"user_id": 1, "email": "a@b.com"}
    store.delete("k")
    assert store.get("k") is None


def test_missing_keys_are_noops(store):
    assert store.get("absent") is None
    assert store.pop("absent") is None
    store.delete("absent")


def test_pop_returns_value_once(store):
    store.set("otp", "045123", ttl_seconds=60)
    assert store.pop("otp") == "045123"
    assert store.pop("otp") is None
    assert store.get("otp") is None


def test_set_overwrites_value_and_expiry(store, clock):
    store.set("otp", "111111", ttl_seconds=10)
    clock[0] += 8
    store.set("otp", "222222", ttl_seconds=10)
    clock[0] += 8
    assert store.get("otp") == "222222"


def test_entries_expire(store, clock):
    store.set("k", "v", ttl_seconds=300)
    clock[0] += 299
    assert store.get("k") == "v"
    clock[0] += 1
    assert store.get("k") is None
    assert store.pop("k") is None


def test_increment_window_starts_on_first_call(store, clock):
    assert store.increment("ratelimit:a", ttl_seconds=900) == 1
    clock[0] += 600
    assert store.increment("ratelimit:a", ttl_seconds=900) == 2
    # The second increment did not extend the window.
    clock[0] += 300
    assert store.increment("ratelimit:a", ttl_seconds=900) == 1


def test_purge_expired(store, clock):
    store.set("short", 1, ttl_seconds=10)
    store.set("long", 2, ttl_seconds=1000)
    clock[0] += 20
    assert store.purge_expired() == 1
    assert store.get("long") == 2


def test_use_before_connect_raises():
    s = SQLiteEphemeralStore(":memory:")
    with pytest.raises(EphemeralStoreError):
        s.get("k")
    assert s.ping() is False


def test_add_only_fills_empty_or_expired_keys(store, clock):
    assert store.add("otp", "111111", ttl_seconds=10) is True
    assert store.add("otp", "222222", ttl_seconds=10) is False
    assert store.get("otp") == "111111"
    clock[0] += 10
    assert store.add("otp", "333333", ttl_seconds=10) is True
    assert store.get("otp") == "333333"


# ---------------------------------------------------------------------------
# SQLite backend, several connections on one file
# ---------------------------------------------------------------------------


@pytest.fixture
def file_stores(tmp_path):
    path = str(tmp_path / "ephemeral.db")
    stores = [SQLiteEphemeralStore(path) for _ in range(8)]
    for s in stores:
        s.connect()
    yield stores
    for s in stores:
        s.close()


def _run_together(stores, fn):
    barrier = threading.Barrier(len(stores))
    results = [None] * len(stores)

    def worker(i, s):
        barrier.wait()
        results[i] = fn(s)

    threads = [threading.Thread(target=worker, args=(i, s)) for i, s in enumerate(stores)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_pop_redeems_once_across_connections(file_stores):
    for _ in range(10):
        file_stores[0].set("auth:passwordless:abc", {"email": "a@b.com"}, ttl_seconds=60)
        results = _run_together(file_stores, lambda s: s.pop("auth:passwordless:abc"))
        assert [r for r in results if r is not None] == [{"email": "a@b.com"}]


def test_increment_counts_every_call_across_connections(file_stores):
    results = _run_together(file_stores, lambda s: s.increment("ratelimit:a", ttl_seconds=900))
    assert sorted(results) == list(range(1, len(file_stores) + 1))
    assert file_stores[0].get("ratelimit:a") == len(file_stores)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


@pytest.fixture
def redis_client():
    client = MagicMock(spec=redis.Redis)
    client.ping.return_value = True
    return client


@pytest.fixture
def redis_store(redis_client):
    s = RedisEphemeralStore("redis://localhost:6379/0", client=redis_client)
    s.connect()
    return s


def test_redis_set_uses_expiry(redis_store, redis_client):
    redis_store.set("k", {"a": 1}, ttl_seconds=300)
    redis_client.set.assert_called_once_with("k", '{"a": 1}', ex=300)


def test_redis_pop_uses_getdel(redis_store, redis_client):
    redis_client.getdel.return_value = '"045123"'
    assert redis_store.pop("auth:otp:a@b.com") == "045123"
    redis_client.getdel.assert_called_once_with("auth:otp:a@b.com")


def test_redis_get_missing_is_none(redis_store, redis_client):
    redis_client.get.return_value = None
    assert redis_store.get("absent") is None


def test_redis_increment_sets_expiry_only_first_time(redis_store, redis_client):
    redis_client.incr.side_effect = [1, 2]
    assert redis_store.increment("ratelimit:a", 900) == 1
    assert redis_store.increment("ratelimit:a", 900) == 2
    redis_client.expire.assert_called_once_with("ratelimit:a", 900)


def test_redis_errors_are_translated(redis_store, redis_client):
    redis_client.get.side_effect = redis.ConnectionError("down")
    with pytest.raises(EphemeralStoreError):
        redis_store.get("k")


def test_redis_connect_failure(redis_client):
    redis_client.ping.side_effect = redis.ConnectionError("refused")
    s = RedisEphemeralStore("redis://localhost:6379/0", client=redis_client)
    with pytest.raises(EphemeralStoreError):
        s.connect()


def test_redis_purge_is_noop(redis_store):
    assert redis_store.purge_expired() == 0


def test_redis_add_uses_nx(redis_store, redis_client):
    redis_client.set.return_value = None
    assert redis_store.add("k", "v", ttl_seconds=30) is False
    redis_client.set.assert_called_once_with("k", '"v"', ex=30, nx=True)
