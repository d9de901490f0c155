"""
Layered get-or-compute cache.

A bounded in-process tier sits in front of a shared tier (Redis in
production). Misses on both tiers invoke the caller's compute function
exactly once per key, no matter how many requests arrive concurrently.
Failures of either tier degrade the lookup to a miss and are counted,
never raised.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from search_gateway.cache.base import CacheBackend
from search_gateway.cache.memory import InMemoryCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

LAYER_MEMORY = "memory"
LAYER_SHARED = "shared"
LAYER_NONE = "none"


@dataclass
class CacheStats:
    """Counters for cache effectiveness and tier health."""

    memory_hits: int = 0
    memory_misses: int = 0
    shared_hits: int = 0
    shared_misses: int = 0
    shared_errors: int = 0
    source_hits: int = 0
    inflight_joins: int = 0

    @property
    def lookups(self) -> int:
        return self.memory_hits + self.memory_misses

    @property
    def hit_rate(self) -> float:
        if self.lookups == 0:
            return 0.0
        return (self.memory_hits + self.shared_hits) / self.lookups

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_hits": self.memory_hits,
            "memory_misses": self.memory_misses,
            "shared_hits": self.shared_hits,
            "shared_misses": self.shared_misses,
            "shared_errors": self.shared_errors,
            "source_hits": self.source_hits,
            "inflight_joins": self.inflight_joins,
            "hit_rate": round(self.hit_rate, 4),
        }


class MultiLayerCache:
    """
    Two-tier cache with single-flight computation.

    Example:
        cache = MultiLayerCache(InMemoryCache(max_size=1000), RedisCache(url))
        results = await cache.get(key, lambda: engine.compute(query, org_id))
    """

    def __init__(
        self,
        memory: InMemoryCache | None = None,
        shared: CacheBackend | None = None,
        default_ttl_seconds: int = 300,
        memory_ttl_seconds: int = 60,
    ) -> None:
        """
        Initialize the layered cache.

        Args:
            memory: Fast in-process tier (created if not given)
            shared: Shared tier; None runs with the fast tier only
            default_ttl_seconds: TTL for entries written to the shared tier
            memory_ttl_seconds: Upper bound on fast tier TTL
        """
        self._memory = memory or InMemoryCache(default_ttl_seconds=memory_ttl_seconds)
        self._shared = shared
        self._default_ttl = default_ttl_seconds
        self._memory_ttl = memory_ttl_seconds
        self._inflight: dict[str, asyncio.Task] = {}
        self._stats = CacheStats()

    @property
    def memory(self) -> InMemoryCache:
        return self._memory

    @property
    def shared(self) -> CacheBackend | None:
        return self._shared

    async def get(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> T:
        """
        Return the cached value for ``key``, computing it on a full miss.

        Args:
            key: Cache key
            compute: Zero-argument coroutine function producing the value
            ttl_seconds: Shared tier TTL (None = default)

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever ``compute`` raises; failed computations are not cached
        """
        value, _ = await self.get_with_status(key, compute, ttl_seconds)
        return value

    async def get_with_status(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> tuple[T, str]:
        """
        Like ``get`` but also report which tier answered.

        Returns:
            Tuple of (value, layer) where layer is "memory", "shared" or
            "none" when the value had to be computed
        """
        value = await self._memory_get(key)
        if value is not None:
            self._stats.memory_hits += 1
            return value, LAYER_MEMORY
        self._stats.memory_misses += 1

        task = self._inflight.get(key)
        if task is not None:
            self._stats.inflight_joins += 1
            logger.debug(f"Joining in-flight computation for {key}")
            return await asyncio.shield(task)

        task = asyncio.create_task(self._load(key, compute, ttl_seconds))
        self._inflight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _load(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl_seconds: int | None,
    ) -> tuple[Any, str]:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        memory_ttl = min(ttl, self._memory_ttl)

        if self._shared is not None:
            try:
                value = await self._shared.get(key)
            except Exception as e:
                self._stats.shared_errors += 1
                logger.warning(f"Shared cache read failed for {key}: {e}")
                value = None
            else:
                if value is None:
                    self._stats.shared_misses += 1
            if value is not None:
                self._stats.shared_hits += 1
                await self._memory_set(key, value, memory_ttl)
                return value, LAYER_SHARED

        value = await compute()
        self._stats.source_hits += 1

        if value is None:
            return value, LAYER_NONE

        await self._memory_set(key, value, memory_ttl)
        if self._shared is not None:
            try:
                await self._shared.set(key, value, ttl)
            except Exception as e:
                self._stats.shared_errors += 1
                logger.warning(f"Shared cache write failed for {key}: {e}")

        return value, LAYER_NONE

    async def _memory_get(self, key: str) -> Any | None:
        try:
            return await self._memory.get(key)
        except Exception as e:
            logger.warning(f"Memory cache read failed for {key}: {e}")
            return None

    async def _memory_set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._memory.set(key, value, ttl_seconds)
        except Exception as e:
            logger.warning(f"Memory cache write failed for {key}: {e}")

    async def invalidate(self, key: str) -> None:
        """Remove a key from both tiers."""
        await self._memory.delete(key)
        if self._shared is not None:
            try:
                await self._shared.delete(key)
            except Exception as e:
                self._stats.shared_errors += 1
                logger.warning(f"Shared cache invalidate failed for {key}: {e}")

    async def invalidate_pattern(self, pattern: str) -> int:
        """
        Remove every key matching a glob pattern from both tiers.

        Args:
            pattern: Glob such as "search:org_1:*"

        Returns:
            Number of entries removed, summed over both tiers
        """
        removed = await self._memory.clear(pattern)
        if self._shared is not None:
            try:
                removed += await self._shared.clear(pattern)
            except Exception as e:
                self._stats.shared_errors += 1
                logger.warning(f"Shared cache invalidate failed for {pattern}: {e}")
        logger.info(f"Invalidated {removed} cache entries matching {pattern}")
        return removed

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        stats = self._stats.to_dict()
        stats["memory_size"] = self._memory.size()
        stats["inflight"] = len(self._inflight)
        stats["shared_backend"] = self._shared.name if self._shared else None
        return stats

    def reset_stats(self) -> None:
        self._stats = CacheStats()

    async def close(self) -> None:
        """Close both tiers."""
        if self._shared is not None:
            try:
                await self._shared.close()
            except Exception as e:
                logger.error(f"Error closing shared cache: {e}")
        await self._memory.close()
