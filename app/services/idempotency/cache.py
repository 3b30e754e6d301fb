"""
Fast-Path Cache and Mutual-Exclusion Lock

Shared, TTL-bounded key-value store for serialized results plus an atomic
try-lock keyed by idempotency key.

Implementations:
- RedisFastPathCache: production, safe across processes and machines
- InMemoryFastPathCache: tests and single-process development
"""

import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis
import structlog

from app.services.idempotency.errors import StoreUnavailableError

logger = structlog.get_logger(__name__)

# Poll interval while waiting for a contended lock (bounded wait only)
LOCK_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class LockHandle:
    """
    Proof of lock ownership, returned by acquire_lock and passed to release_lock.

    token is unique per acquisition; only the holder of the token can extend or
    release the lock, so an attempt whose lock expired can never release the
    lock of the attempt that took over.
    """
    key: str
    token: str
    ttl: float


def _new_token() -> str:
    return f"{os.getpid()}-{threading.get_ident()}-{uuid.uuid4().hex}"


class FastPathCache(ABC):
    """Abstract interface for the shared cache and lock."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes or None when missing/expired."""

    @abstractmethod
    def put(self, key: str, value: bytes, ttl: float) -> None:
        """Store bytes for ttl seconds."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key (no-op when missing)."""

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    @abstractmethod
    def try_acquire_lock(self, key: str, ttl: float) -> Optional[LockHandle]:
        """Single atomic acquisition attempt. None when held by someone else."""

    @abstractmethod
    def extend_lock(self, handle: LockHandle) -> bool:
        """Reset the lock's TTL. False when the lock is no longer ours."""

    @abstractmethod
    def release_lock(self, handle: LockHandle) -> bool:
        """Release if still owned by handle. False when it already expired or was taken over."""

    def acquire_lock(self, key: str, ttl: float, wait: float = 0.0) -> Optional[LockHandle]:
        """
        Acquire a lock without queueing.

        Args:
            key: Lock key
            ttl: Lock lifetime in seconds (crashed holders release by expiry)
            wait: Maximum seconds to keep retrying; 0 fails fast

        Returns:
            LockHandle when acquired, None when another holder has it
        """
        deadline = time.monotonic() + max(wait, 0.0)
        while True:
            handle = self.try_acquire_lock(key, ttl)
            if handle is not None:
                return handle
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(LOCK_POLL_INTERVAL, remaining))


# Compare-and-delete / compare-and-expire so only the token owner can touch the lock
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisFastPathCache(FastPathCache):
    """
    Redis-backed cache and lock.

    Lock: SET key token NX PX ttl (atomic), released via token-checked Lua script.
    Every redis.RedisError is wrapped in StoreUnavailableError.
    """

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize Redis cache.

        Args:
            redis_client: Redis client instance (from redis-py)
        """
        self.redis = redis_client
        self._release = redis_client.register_script(_RELEASE_SCRIPT)
        self._extend = redis_client.register_script(_EXTEND_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisFastPathCache":
        return cls(redis.Redis.from_url(url, socket_timeout=5, socket_connect_timeout=5))

    def get(self, key: str) -> Optional[bytes]:
        try:
            value = self.redis.get(key)
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "get", e) from e
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    def put(self, key: str, value: bytes, ttl: float) -> None:
        try:
            self.redis.set(key, value, px=_to_millis(ttl))
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "put", e) from e

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(key)
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "delete", e) from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.redis.exists(key))
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "exists", e) from e

    def try_acquire_lock(self, key: str, ttl: float) -> Optional[LockHandle]:
        token = _new_token()
        try:
            acquired = self.redis.set(key, token, nx=True, px=_to_millis(ttl))
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "acquire_lock", e) from e
        if not acquired:
            return None
        return LockHandle(key=key, token=token, ttl=ttl)

    def extend_lock(self, handle: LockHandle) -> bool:
        try:
            return bool(self._extend(keys=[handle.key], args=[handle.token, _to_millis(handle.ttl)]))
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "extend_lock", e) from e

    def release_lock(self, handle: LockHandle) -> bool:
        try:
            return bool(self._release(keys=[handle.key], args=[handle.token]))
        except redis.RedisError as e:
            raise StoreUnavailableError("redis", "release_lock", e) from e


def _to_millis(seconds: float) -> int:
    return max(1, int(seconds * 1000))


class InMemoryFastPathCache(FastPathCache):
    """
    Thread-safe in-process cache and lock.

    Only coordinates threads of one process. The clock is injectable so TTL
    expiry can be tested without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._mutex = threading.Lock()
        self._values: Dict[str, Tuple[bytes, float]] = {}
        self._locks: Dict[str, Tuple[str, float]] = {}

    def _live_value(self, key: str) -> Optional[bytes]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def _live_lock(self, key: str) -> Optional[str]:
        entry = self._locks.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if self._clock() >= expires_at:
            del self._locks[key]
            return None
        return token

    def get(self, key: str) -> Optional[bytes]:
        with self._mutex:
            return self._live_value(key)

    def put(self, key: str, value: bytes, ttl: float) -> None:
        with self._mutex:
            self._values[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._mutex:
            self._values.pop(key, None)

    def try_acquire_lock(self, key: str, ttl: float) -> Optional[LockHandle]:
        with self._mutex:
            if self._live_lock(key) is not None:
                return None
            token = _new_token()
            self._locks[key] = (token, self._clock() + ttl)
            return LockHandle(key=key, token=token, ttl=ttl)

    def extend_lock(self, handle: LockHandle) -> bool:
        with self._mutex:
            if self._live_lock(handle.key) != handle.token:
                return False
            self._locks[handle.key] = (handle.token, self._clock() + handle.ttl)
            return True

    def release_lock(self, handle: LockHandle) -> bool:
        with self._mutex:
            if self._live_lock(handle.key) != handle.token:
                logger.warning("lock_release_not_owner", lock_key=handle.key)
                return False
            del self._locks[handle.key]
            return True

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            return self._live_lock(key) is not None

    def clear(self) -> None:
        """Clear all entries and locks (test utility)."""
        with self._mutex:
            self._values.clear()
            self._locks.clear()
