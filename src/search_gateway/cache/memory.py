"""In-process cache tier."""

import asyncio
import fnmatch
import logging
import time
from collections import OrderedDict
from typing import Any

from search_gateway.cache.base import CacheBackend, CacheEntry, Clock

logger = logging.getLogger(__name__)


class InMemoryCache(CacheBackend):
    """
    Dictionary-backed cache tier.

    Used as the fast layer of ``MultiLayerCache`` and as the shared layer in
    single-instance deployments and tests. Entries are kept in write order;
    when ``max_size`` is reached expired entries are purged first, then the
    oldest write is evicted. Expired entries are otherwise dropped lazily on
    read.

    Example:
        cache = InMemoryCache(default_ttl_seconds=60, max_size=1000)
        await cache.set("search:org_1:ab12", results)
    """

    def __init__(
        self,
        default_ttl_seconds: int | None = 60,
        max_size: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        """
        Args:
            default_ttl_seconds: TTL applied when ``set`` gets none (None = no expiry)
            max_size: Entry bound (None = unbounded)
            clock: Monotonic seconds source, injectable for tests
        """
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._default_ttl = default_ttl_seconds
        self._max_size = max_size
        self._clock = clock or time.monotonic
        self._lock = asyncio.Lock()
        self._connected = True
        self.evictions = 0

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def max_size(self) -> int | None:
        return self._max_size

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        entry = CacheEntry(key=key, value=value, ttl_seconds=ttl, stored_at=self._clock())

        async with self._lock:
            self._entries.pop(key, None)
            if self._max_size is not None and len(self._entries) >= self._max_size:
                self._make_room()
            self._entries[key] = entry
        return True

    def _make_room(self) -> None:
        # Caller holds the lock
        self._purge(self._clock())
        while self._entries and len(self._entries) >= self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Evicted {evicted} from memory cache")

    def _purge(self, now: float) -> int:
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        async with self._lock:
            removed = self._purge(self._clock())
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")
        return removed

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self, pattern: str | None = None) -> int:
        async with self._lock:
            if pattern is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed

            matching = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in matching:
                del self._entries[key]
            return len(matching)

    async def close(self) -> None:
        self._connected = False
        async with self._lock:
            self._entries.clear()

    async def health_check(self) -> dict[str, Any]:
        now = self._clock()
        async with self._lock:
            size = len(self._entries)
            expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_entries": size,
            "expired_entries": expired,
            "max_size": self._max_size,
            "evictions": self.evictions,
        }

    def size(self) -> int:
        """Entry count, expired entries included until they are purged."""
        return len(self._entries)
