"""
Tests for the fast-path cache and lock

Tests cover:
- TTL expiry of values and locks (in-memory, fake clock)
- Lock ownership: only the token holder can extend/release
- Bounded wait on a contended lock
- Redis adapter: SET NX PX usage and error wrapping
"""

from unittest.mock import Mock

import pytest
import redis

from app.services.idempotency.cache import InMemoryFastPathCache, LockHandle, RedisFastPathCache
from app.services.idempotency.errors import StoreUnavailableError


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return InMemoryFastPathCache(clock=clock)


class TestInMemoryValues:
    """Tests for get/put/delete."""

    def test_put_then_get(self, memory_cache):
        memory_cache.put("k", b"v", ttl=10)

        assert memory_cache.get("k") == b"v"
        assert memory_cache.exists("k") is True

    def test_value_expires(self, memory_cache, clock):
        memory_cache.put("k", b"v", ttl=10)
        clock.advance(10)

        assert memory_cache.get("k") is None
        assert memory_cache.exists("k") is False

    def test_delete(self, memory_cache):
        memory_cache.put("k", b"v", ttl=10)
        memory_cache.delete("k")
        memory_cache.delete("missing")  # no-op

        assert memory_cache.get("k") is None


class TestInMemoryLock:
    """Tests for the lock primitive."""

    def test_second_acquire_fails_while_held(self, memory_cache):
        first = memory_cache.acquire_lock("lock", ttl=10)

        assert first is not None
        assert memory_cache.acquire_lock("lock", ttl=10) is None

    def test_release_allows_reacquire(self, memory_cache):
        handle = memory_cache.acquire_lock("lock", ttl=10)

        assert memory_cache.release_lock(handle) is True
        assert memory_cache.acquire_lock("lock", ttl=10) is not None

    def test_lock_expires(self, memory_cache, clock):
        memory_cache.acquire_lock("lock", ttl=10)
        clock.advance(10.5)

        assert memory_cache.acquire_lock("lock", ttl=10) is not None

    def test_stale_holder_cannot_release_new_holder(self, memory_cache, clock):
        stale = memory_cache.acquire_lock("lock", ttl=10)
        clock.advance(11)
        current = memory_cache.acquire_lock("lock", ttl=10)

        assert memory_cache.release_lock(stale) is False
        assert memory_cache.is_locked("lock") is True
        assert memory_cache.release_lock(current) is True

    def test_extend_keeps_lock_alive(self, memory_cache, clock):
        handle = memory_cache.acquire_lock("lock", ttl=10)
        clock.advance(8)

        assert memory_cache.extend_lock(handle) is True
        clock.advance(8)  # 16s after acquire, 8s after extend

        assert memory_cache.acquire_lock("lock", ttl=10) is None

    def test_extend_fails_after_expiry(self, memory_cache, clock):
        handle = memory_cache.acquire_lock("lock", ttl=10)
        clock.advance(11)

        assert memory_cache.extend_lock(handle) is False

    def test_tokens_are_unique(self, memory_cache):
        h1 = memory_cache.acquire_lock("a", ttl=10)
        h2 = memory_cache.acquire_lock("b", ttl=10)

        assert h1.token != h2.token

    def test_bounded_wait_gives_up(self):
        real_cache = InMemoryFastPathCache()
        real_cache.acquire_lock("lock", ttl=10)

        assert real_cache.acquire_lock("lock", ttl=10, wait=0.1) is None


class TestRedisFastPathCache:
    """Tests for the Redis adapter against a mocked client."""

    @pytest.fixture
    def client(self):
        client = Mock(spec=redis.Redis)
        client.register_script.side_effect = lambda script: Mock(name="script")
        return client

    def test_lock_uses_set_nx_px(self, client):
        client.set.return_value = True
        cache = RedisFastPathCache(client)

        handle = cache.try_acquire_lock("idempotency:k:lock", ttl=10)

        assert handle is not None
        assert handle.key == "idempotency:k:lock"
        client.set.assert_called_once_with("idempotency:k:lock", handle.token, nx=True, px=10000)

    def test_lock_not_acquired_returns_none(self, client):
        client.set.return_value = None
        cache = RedisFastPathCache(client)

        assert cache.try_acquire_lock("lock", ttl=10) is None

    def test_put_uses_millisecond_ttl(self, client):
        cache = RedisFastPathCache(client)

        cache.put("k", b"v", ttl=86400)

        client.set.assert_called_once_with("k", b"v", px=86400000)

    def test_release_runs_token_checked_script(self, client):
        cache = RedisFastPathCache(client)
        cache._release.return_value = 1
        handle = LockHandle(key="lock", token="tok", ttl=10)

        assert cache.release_lock(handle) is True
        cache._release.assert_called_once_with(keys=["lock"], args=["tok"])

    def test_release_of_foreign_lock_returns_false(self, client):
        cache = RedisFastPathCache(client)
        cache._release.return_value = 0

        assert cache.release_lock(LockHandle(key="lock", token="old", ttl=10)) is False

    @pytest.mark.parametrize("method,args", [
        ("get", ("k",)),
        ("put", ("k", b"v", 10)),
        ("exists", ("k",)),
        ("try_acquire_lock", ("k", 10)),
    ])
    def test_redis_errors_become_store_unavailable(self, client, method, args):
        error = redis.ConnectionError("connection refused")
        client.get.side_effect = error
        client.set.side_effect = error
        client.exists.side_effect = error
        cache = RedisFastPathCache(client)

        with pytest.raises(StoreUnavailableError) as exc_info:
            getattr(cache, method)(*args)

        assert exc_info.value.backend == "redis"
        assert exc_info.value.cause is error
