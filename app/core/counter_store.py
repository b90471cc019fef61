"""
Counter storage for fixed-window throttling.

Two implementations share one async interface:
- RedisCounterStore: shared across workers/instances (production)
- MemoryCounterStore: single process, used when REDIS_URL is empty and in tests

Only atomic primitives are exposed (GET/SET PX/INCR/TTL/DEL). Callers must not
assume any read-then-write sequence built on top of them is atomic.
"""

import math
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.asyncio import Redis

from app.core.logging_config import get_logger

logger = get_logger(__name__)

# Redis TTL sentinels
TTL_MISSING = -2
TTL_NO_EXPIRY = -1


class CounterStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def ttl(self, key: str) -> int: ...

    async def delete(self, *keys: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCounterStore:
    """Thin async wrapper over redis.asyncio with an optional key prefix."""

    def __init__(self, client: Redis, key_prefix: str = ""):
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> "RedisCounterStore":
        # from_url is sync; the pool connects lazily on first command
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            health_check_interval=30,
            socket_connect_timeout=5.0,
            socket_timeout=5.0,
        )
        logger.info("Redis counter store configured", key_prefix=key_prefix or None)
        return cls(client, key_prefix=key_prefix)

    @property
    def client(self) -> Redis:
        return self._client

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}" if self._prefix else key

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._k(key))

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        result = await self._client.set(self._k(key), value, px=ttl_ms)
        return bool(result)

    async def incr(self, key: str) -> int:
        return int(await self._client.incr(self._k(key)))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(self._k(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*(self._k(k) for k in keys)))

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCounterStore:
    """
    In-process counter store with Redis semantics.

    Expiry is fixed when a key is SET with a TTL; INCR never touches it.
    Expired keys are invisible on access and are purged by a sweep every
    `sweep_interval` SETs, so one-off identifiers do not accumulate. Not
    shared between workers.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: int = 1000):
        self._clock = clock
        # {key: (value, expires_at or None)}
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sweep_interval = max(1, sweep_interval)
        self._sets_since_sweep = 0

    def _sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug("Expired counters purged", count=len(expired), remaining=len(self._data))
        return len(expired)

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        expires_at = self._clock() + ttl_ms / 1000.0 if ttl_ms else None
        self._data[key] = (str(value), expires_at)
        self._sets_since_sweep += 1
        if self._sets_since_sweep >= self._sweep_interval:
            self._sets_since_sweep = 0
            self._sweep()
        return True

    async def incr(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            self._data[key] = ("1", None)
            return 1
        value, expires_at = entry
        try:
            new_value = int(value) + 1
        except ValueError:
            raise ValueError(f"value at {key!r} is not an integer") from None
        self._data[key] = (str(new_value), expires_at)
        return new_value

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return TTL_MISSING
        expires_at = entry[1]
        if expires_at is None:
            return TTL_NO_EXPIRY
        # Redis rounds the millisecond TTL to the nearest second
        remaining_ms = (expires_at - self._clock()) * 1000.0
        return int(math.floor((remaining_ms + 500) / 1000))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()

    def clear(self) -> None:
        """Drop every counter. Used for testing."""
        self._data.clear()


def build_counter_store(url: str, key_prefix: str = "") -> CounterStore:
    """Pick the Redis store when a URL is configured, else the in-process one."""
    if url:
        return RedisCounterStore.from_url(url, key_prefix=key_prefix)
    logger.warning("REDIS_URL not set, using in-process counter store (single worker only)")
    return MemoryCounterStore()
