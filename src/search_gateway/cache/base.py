"""Cache tier interface shared by the memory and Redis backends."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """
    A stored search result set.

    ``stored_at`` is read from the owning tier's clock (monotonic seconds
    by default), so entries survive wall clock adjustments.
    """

    key: str
    value: Any
    ttl_seconds: int | None = None
    stored_at: float = field(default_factory=time.monotonic)

    def expires_at(self) -> float | None:
        if self.ttl_seconds is None:
            return None
        return self.stored_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        deadline = self.expires_at()
        return deadline is not None and now >= deadline


class CacheBackend(ABC):
    """
    One tier of the search cache.

    Values are opaque to the tier. Shared tiers raise ``CacheUnavailable``
    when their server cannot be reached; ``MultiLayerCache`` turns that
    into a miss.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name reported in health and stats ('memory', 'redis')."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the live value under ``key`` or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """
        Store ``value`` under ``key``.

        A ttl of None means the tier default; shared tiers require the
        value to be JSON serializable.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self, pattern: str | None = None) -> int:
        """Drop keys matching a glob such as "search:org_1:*" (all keys when None)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"backend": self.name, "connected": self.is_connected}
