"""
Async caching abstraction with in-memory and Redis backends.

The job store persists job records through a ``CacheBackend``. Records are
small JSON documents with a bounded lifetime, so a TTL cache is all the
durability the engine needs.

Manifesto:
    - **Protocol-based:** CacheBackend defines the contract
    - **Tier-aware:** InMemoryCache for one process, RedisCache across processes
    - **TTL support:** Time-based expiration for all backends
    - **Async:** Backends are awaited from the event loop, never block it

Architecture:
    ::

        CacheBackend (Protocol)
        ├── InMemoryCache : single-process, bounded LRU, lazy TTL expiry
        └── RedisCache    : distributed, redis.asyncio, SETEX

        API: await get(key) → value | None
             await set(key, value, ttl_seconds=None)
             await delete(key) → bool
             await exists(key) → bool
             await clear()

Guardrails:
    ❌ DON'T: Use InMemoryCache when status is served by another process
    ✅ DO: Use RedisCache when pollers can hit a different instance

    ❌ DON'T: Cache without TTL (unbounded growth)
    ✅ DO: Always set default_ttl_seconds or per-key ttl_seconds

Tags:
    cache, redis, in-memory, ttl, stagespine, protocol

Doc-Types:
    - API Reference
    - Infrastructure Guide
"""

from __future__ import annotations

import copy
import json
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol


class CacheBackend(Protocol):
    """Protocol for async cache backends.

    Keys are strings, values are JSON-serializable.
    """

    name: str

    async def get(self, key: str) -> Any | None:
        """Return the value, or ``None`` if not found or expired."""
        ...

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value. ``ttl_seconds=None`` → backend default TTL."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if something was removed."""
        ...

    async def exists(self, key: str) -> bool:
        """Check if a key exists and has not expired."""
        ...

    async def clear(self) -> None:
        """Remove all keys. Testing only."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached. Values are deep-copied
    on the way in and out so callers never share mutable state with the
    store, the same as a networked backend would behave.

    Attributes:
        max_size: Maximum number of keys before LRU eviction.
        default_ttl_seconds: Default TTL for keys (``None`` → no expiry).
    """

    name = "memory"

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: int | None = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if self._expired(expires_at):
            del self._store[key]
            return None

        self._store.move_to_end(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (self._clock() + ttl) if ttl else None

        if key not in self._store and len(self._store) >= self._max_size:
            self._store.popitem(last=False)

        self._store[key] = (copy.deepcopy(value), expires_at)
        self._store.move_to_end(key)

    async def delete(self, key: str) -> bool:
        entry = self._store.pop(key, None)
        return entry is not None and not self._expired(entry[1])

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def clear(self) -> None:
        self._store.clear()

    def size(self) -> int:
        """Return current number of stored keys (expired ones included)."""
        return len(self._store)

    def purge_expired(self) -> int:
        """Drop every expired key. Returns the number removed."""
        expired = [k for k, (_, exp) in self._store.items() if self._expired(exp)]
        for key in expired:
            del self._store[key]
        return len(expired)


# ------------------------------------------------------------------ #
# Redis Cache
# ------------------------------------------------------------------ #


class RedisCache:
    """Redis-backed distributed cache (``redis.asyncio``).

    Lets a different process instance serve job status reads.

    Example:
        cache = RedisCache("redis://localhost:6379/0", default_ttl_seconds=7200)
        await cache.set("job:abc", {"status": "running"})
    """

    name = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        default_ttl_seconds: int | None = 3600,
        client: Any = None,
    ):
        if client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError as exc:
                raise ImportError(
                    "Redis backend requires the 'redis' package. "
                    "Install with: pip install stagespine[redis]"
                ) from exc
            client = aioredis.from_url(url, decode_responses=False)

        self._client = client
        self._url = url
        self._default_ttl = default_ttl_seconds

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = json.dumps(value)

        if ttl:
            await self._client.setex(key, ttl, serialized)
        else:
            await self._client.set(key, serialized)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def clear(self) -> None:
        """Flush the current Redis database. Use with caution."""
        await self._client.flushdb()

    async def close(self) -> None:
        await self._client.aclose()


__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
]
