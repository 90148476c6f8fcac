"""
Product cache - Redis-backed read-through cache with write invalidation.

Provides:
- RedisCache: async Redis backend (redis.asyncio)
- InMemoryCache: TTL backend for tests and local runs
- ReadThroughCache: get_or_fetch accessor and synchronous invalidation

CRITICAL: Mutations delete the cached key BEFORE they are acknowledged and
never write the new value through. The next read repopulates from the
source of truth. Negative (not found) results are never cached.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from catalog_sync.errors import TransientError
from catalog_sync.logging_context import LoggerLike

logger = logging.getLogger(__name__)
_module_logger = logger

PRODUCT_KEY_PREFIX = "product"


def product_cache_key(product_id: str) -> str:
    """Namespaced cache key for a product."""
    return f"{PRODUCT_KEY_PREFIX}:{product_id}"


class CacheUnavailableError(TransientError):
    """Cache backend could not be reached."""

    error_code = "cache_unavailable"


class CacheBackend(ABC):
    """Key-value store with TTL semantics."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Delete a key. Returns the number of keys removed."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def close(self) -> None:
        return None


class RedisCache(CacheBackend):
    """
    Redis backend using redis.asyncio.

    Errors are raised as CacheUnavailableError; callers decide whether a
    failure degrades (reads) or fails the operation (invalidation).
    """

    def __init__(self, redis_url: Optional[str] = None, client: Any = None):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            import redis.asyncio as redis_asyncio

            client = redis_asyncio.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
        self._redis = client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(key)
        except Exception as e:
            raise CacheUnavailableError(f"Redis GET failed: {e}", key=key) from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl_seconds)
        except Exception as e:
            raise CacheUnavailableError(f"Redis SET failed: {e}", key=key) from e

    async def delete(self, key: str) -> int:
        try:
            return int(await self._redis.delete(key))
        except Exception as e:
            raise CacheUnavailableError(f"Redis DELETE failed: {e}", key=key) from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning("Redis ping failed", extra={"error": str(e)})
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryCache(CacheBackend):
    """
    In-memory TTL cache.

    Thread-safe; expiry is checked lazily on read.
    """

    def __init__(
        self,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = Lock()
        self._max_size = max_size
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._cache[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                # Evict the entry closest to expiry
                soonest = min(self._cache, key=lambda k: self._cache[k][1])
                del self._cache[soonest]
            self._cache[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> int:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return 1
            return 0

    async def ping(self) -> bool:
        return True


class ReadThroughCache:
    """
    Read-through, write-invalidate accessor over a CacheBackend.

    Usage:
        cache = ReadThroughCache(RedisCache(redis_url))

        product = await cache.get_or_fetch(
            product_cache_key(product_id),
            lambda: source.fetch_by_id(product_id),
            ttl_seconds=3600,
        )

        await cache.invalidate(product_cache_key(product_id))
    """

    def __init__(self, backend: CacheBackend, logger: Optional[LoggerLike] = None):
        self.backend = backend
        self._log = logger if logger is not None else _module_logger

    async def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss. Backend errors degrade to a miss."""
        try:
            raw = await self.backend.get(key)
        except CacheUnavailableError as e:
            self._log.warning("cache.read_failed", extra={"key": key, "error": str(e)})
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            self._log.warning("cache.corrupt_entry", extra={"key": key})
            return None

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Optional[Any]]],
        ttl_seconds: int,
    ) -> Optional[Any]:
        """
        Return the cached value or fetch, store and return it.

        A None result from ``fetch_fn`` means "not found" and is not cached.
        Exceptions from ``fetch_fn`` propagate and nothing is cached.
        """
        cached = await self.get(key)
        if cached is not None:
            self._log.debug("cache.hit", extra={"key": key})
            return cached

        self._log.debug("cache.miss", extra={"key": key})
        value = await fetch_fn()

        if value is None:
            return None

        try:
            await self.backend.set(key, json.dumps(value), ttl_seconds)
        except CacheUnavailableError as e:
            self._log.warning("cache.write_failed", extra={"key": key, "error": str(e)})

        return value

    async def invalidate(self, key: str) -> int:
        """
        Delete ``key``.

        Raises:
            CacheUnavailableError: The key may still be cached; the caller
                must not acknowledge its mutation.
        """
        removed = await self.backend.delete(key)
        self._log.info("cache.invalidated", extra={"key": key, "removed": removed})
        return removed

    async def ping(self) -> bool:
        return await self.backend.ping()
