"""
TTL key-value stores backing tokens, codes, bindings and challenges.

The store is the single source of truth for every short-lived artifact.
Expiry is native to the store; nothing scans for stale keys. All
check-and-set style operations are single atomic store commands.
"""

import threading
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from shared.clock import Clock, SystemClock
from shared.errors import IdentityServiceException
from shared.logging import get_logger


class KeyValueStore(Protocol):
    """Port for a key-value store with per-key TTL."""

    async def put(self, key: str, value: str, ttl: float) -> None:
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Store only when the key does not exist. True if stored."""
        ...

    async def replace(self, key: str, value: str, ttl: float) -> Optional[str]:
        """Store unconditionally and return the previous value."""
        ...

    async def mark_if_present(self, key: str, marker: str) -> Optional[str]:
        """Overwrite an existing key keeping its TTL; return the previous value.

        Returns None, and stores nothing, when the key is absent.
        """
        ...

    async def ttl(self, key: str) -> Optional[float]:
        ...


class RedisKeyValueStore:
    """Key-value store on Redis."""

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("iam.kvs.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Open the connection pool and check connectivity."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
            await self.redis.ping()
            self.logger.info("Redis key-value store started")

        except Exception as e:
            self.logger.error("Failed to start Redis key-value store", error=str(e))
            raise IdentityServiceException("REDIS_START_FAILED", str(e))

    async def stop(self):
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis key-value store stopped")

    async def put(self, key: str, value: str, ttl: float) -> None:
        await self.redis.set(key, value, px=_millis(ttl))

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(key))

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool:
        return bool(await self.redis.set(key, value, px=_millis(ttl), nx=True))

    async def replace(self, key: str, value: str, ttl: float) -> Optional[str]:
        return await self.redis.set(key, value, px=_millis(ttl), get=True)

    async def mark_if_present(self, key: str, marker: str) -> Optional[str]:
        # SET ... XX KEEPTTL GET: one command, so concurrent callers serialize
        return await self.redis.set(key, marker, xx=True, keepttl=True, get=True)

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self.redis.pttl(key)
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False


class InMemoryKeyValueStore:
    """Process-local key-value store with clock-driven expiry.

    Used for local runs and tests. Every operation completes under one
    lock and without awaiting, so it is atomic for coroutines and threads.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def start(self):
        return None

    async def stop(self):
        with self._lock:
            self._data.clear()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        # caller holds self._lock
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock.now():
            del self._data[key]
            return None
        return entry

    async def put(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            self._data[key] = (value, self.clock.now() + ttl)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self.clock.now() + ttl)
            return True

    async def replace(self, key: str, value: str, ttl: float) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            self._data[key] = (value, self.clock.now() + ttl)
            return entry[0] if entry else None

    async def mark_if_present(self, key: str, marker: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            self._data[key] = (marker, entry[1])
            return entry[0]

    async def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live(key)
            return entry[1] - self.clock.now() if entry else None

    async def health_check(self) -> bool:
        return True


def _millis(ttl: float) -> int:
    return max(1, int(round(ttl * 1000)))
