"""Injected key-value store and per-tenant advisory lock.

Nothing in the engine keeps correctness-relevant state in module globals.
Short-lived shared state goes through a :class:`KeyValueStore` chosen at
startup: the in-memory implementation only coordinates a single process,
so any deployment running more than one worker must use the Redis store.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import redis.asyncio as redis

from academy_billing.core.config import settings
from academy_billing.core.exceptions import BillingEngineError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal async key-value contract with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically set key only if it does not exist. Returns True if set."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only if it still holds value. Returns True if deleted."""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store with explicit TTL eviction.

    Expired keys are dropped on access and by :meth:`evict_expired`, and the
    store refuses to grow past ``max_entries`` live keys.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return value

    def _put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        if key not in self._data and len(self._data) >= self._max_entries:
            self.evict_expired()
            if len(self._data) >= self._max_entries:
                # Drop the entry closest to expiry (or oldest insertion without one)
                victim = min(
                    self._data,
                    key=lambda k: self._data[k][1] if self._data[k][1] is not None else float("inf"),
                )
                del self._data[victim]
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    def evict_expired(self) -> int:
        """Remove every expired key. Returns the number removed."""
        expired = [k for k, (_, exp) in self._data.items() if self._expired(exp)]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._get_live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            self._put(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._get_live(key) is not None:
                return False
            self._put(key, value, ttl_seconds)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with self._lock:
            if self._get_live(key) != value:
                return False
            del self._data[key]
            return True

    def __len__(self) -> int:
        return len(self._data)


class RedisKeyValueStore(KeyValueStore):
    """Store shared by every process through Redis."""

    _DELETE_IF_EQUALS = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) else return 0 end"
    )

    def __init__(self, client: redis.Redis, prefix: str = "academy_billing:"):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(self._key(key), value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._client.set(self._key(key), value, ex=ttl_seconds, nx=True))

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._client.eval(self._DELETE_IF_EQUALS, 1, self._key(key), value))


class LockNotAcquiredError(BillingEngineError):
    """Raised when a tenant lock could not be taken before the wait timeout."""

    code = "tenant_locked"
    status_code = 503
    retryable = True


class TenantLock:
    """Advisory lock serializing growth operations for one academy.

    The lock expires after ``ttl_seconds`` even if the holder dies, so a
    crashed worker cannot block a tenant forever.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 10,
        wait_timeout: float = 5.0,
        poll_interval: float = 0.05,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        key = f"tenant-lock:{tenant_id}"
        token = str(uuid.uuid4())
        deadline = time.monotonic() + self.wait_timeout

        while not await self.store.set_if_absent(key, token, self.ttl_seconds):
            if time.monotonic() >= deadline:
                raise LockNotAcquiredError(f"Could not lock tenant {tenant_id}")
            await asyncio.sleep(self.poll_interval)

        try:
            yield
        finally:
            if not await self.store.delete_if_equals(key, token):
                logger.warning(
                    "Tenant lock expired before release",
                    extra={"tenant_id": tenant_id},
                )


def build_store(backend: Optional[str] = None) -> KeyValueStore:
    """Create the store selected by ``KV_STORE_BACKEND``."""
    backend = backend or settings.KV_STORE_BACKEND
    if backend == "redis":
        from academy_billing.core.redis import redis_client

        return RedisKeyValueStore(redis_client)
    if backend == "memory":
        return InMemoryKeyValueStore()
    raise ValueError(f"Unknown KV_STORE_BACKEND: {backend}")
