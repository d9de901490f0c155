"""
Sliding window rate limiting.

The limiter keeps the timestamps of admitted requests per identifier and
admits a new request only while fewer than ``limit`` of them fall inside
the trailing window. Window state lives in a pluggable store:

- InMemoryWindowStore: single process, per-identifier asyncio locks
- RedisWindowStore: sorted set per identifier updated by one Lua script,
  atomic across gateway instances
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
import asyncio
import logging
import math
import time
import uuid

import redis.asyncio as redis

from search_gateway.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class WindowState:
    """Outcome of one atomic check-and-record against a window store."""

    allowed: bool
    count: int
    """Requests in the window after this call (including it, if admitted)."""

    oldest: float | None
    """Timestamp of the oldest request still inside the window."""


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    limit: int
    """Maximum requests allowed in the window."""

    remaining: int
    """Remaining requests in the current window."""

    reset_at: datetime
    """When the oldest counted request leaves the window."""

    retry_after_seconds: int | None = None
    """Whole seconds to wait before retrying (if not allowed)."""

    identifier: str = ""
    degraded: bool = False
    """True when the store failed and the limiter failed open."""

    def headers(self) -> dict[str, str]:
        """Standard rate limit response headers for this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }
        if not self.allowed and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
            "retry_after_seconds": self.retry_after_seconds,
        }


class SlidingWindowStore(ABC):
    """Abstract base class for rate limit window storage."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Store backend name."""
        ...

    @abstractmethod
    async def hit(
        self,
        key: str,
        now: float,
        window_seconds: int,
        limit: int,
    ) -> WindowState:
        """
        Atomically drop expired entries, then record ``now`` if under limit.

        Args:
            key: Window key
            now: Current time in epoch seconds
            window_seconds: Window size in seconds
            limit: Maximum entries allowed in the window

        Returns:
            WindowState describing the window after the call
        """
        ...

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget every entry for a key."""
        ...

    async def close(self) -> None:
        return None


class InMemoryWindowStore(SlidingWindowStore):
    """
    Window store for a single gateway process.

    Identifiers whose windows have emptied are swept at most once per
    ``sweep_interval_seconds`` so idle callers do not accumulate.
    """

    def __init__(self, sweep_interval_seconds: float = 60.0) -> None:
        self._windows: dict[str, list[float]] = {}
        self._expires: dict[str, float] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = 0.0

    @property
    def name(self) -> str:
        return "memory"

    def size(self) -> int:
        """Number of identifiers currently tracked."""
        return len(self._windows)

    def sweep(self, now: float) -> int:
        """Forget identifiers whose newest request has left its window."""
        stale = [
            key for key, expires in self._expires.items()
            if expires <= now and not self._locks[key].locked()
        ]
        for key in stale:
            self._windows.pop(key, None)
            self._expires.pop(key, None)
            self._locks.pop(key, None)
        if stale:
            logger.debug(f"Swept {len(stale)} idle rate limit windows")
        return len(stale)

    async def hit(
        self,
        key: str,
        now: float,
        window_seconds: int,
        limit: int,
    ) -> WindowState:
        if now >= self._next_sweep:
            self._next_sweep = now + self._sweep_interval
            self.sweep(now)

        async with self._locks[key]:
            cutoff = now - window_seconds
            timestamps = [ts for ts in self._windows.get(key, []) if ts > cutoff]

            allowed = len(timestamps) < limit
            if allowed:
                timestamps.append(now)

            if timestamps:
                self._windows[key] = timestamps
                self._expires[key] = timestamps[-1] + window_seconds
            else:
                self._windows.pop(key, None)
                self._expires.pop(key, None)

            return WindowState(
                allowed=allowed,
                count=len(timestamps),
                oldest=timestamps[0] if timestamps else None,
            )

    async def reset(self, key: str) -> None:
        async with self._locks[key]:
            self._windows.pop(key, None)
            self._expires.pop(key, None)


_SLIDING_WINDOW_LUA = r"""
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call("ZREMRANGEBYSCORE", KEYS[1], "-inf", now_ms - window_ms)
local count = redis.call("ZCARD", KEYS[1])
local allowed = 0
if count < limit then
  redis.call("ZADD", KEYS[1], now_ms, member)
  count = count + 1
  allowed = 1
end
redis.call("PEXPIRE", KEYS[1], window_ms)

local oldest = redis.call("ZRANGE", KEYS[1], 0, 0, "WITHSCORES")
local oldest_ms = "-1"
if oldest[2] then
  oldest_ms = oldest[2]
end
return {allowed, count, oldest_ms}
"""


class RedisWindowStore(SlidingWindowStore):
    """
    Window store shared by all gateway instances.

    Each identifier is a sorted set scored by request time in milliseconds.
    The trim, count and insert happen in one Lua script, so no client-side
    lock is needed.
    """

    def __init__(self, client: Any, prefix: str = "search_gateway:ratelimit:") -> None:
        self._client = client
        self._prefix = prefix
        self._script = client.register_script(_SLIDING_WINDOW_LUA)

    @property
    def name(self) -> str:
        return "redis"

    def _get_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def hit(
        self,
        key: str,
        now: float,
        window_seconds: int,
        limit: int,
    ) -> WindowState:
        now_ms = int(now * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"
        result = await self._script(
            keys=[self._get_key(key)],
            args=[now_ms, int(window_seconds * 1000), limit, member],
        )

        raw_oldest = result[2]
        if isinstance(raw_oldest, bytes):
            raw_oldest = raw_oldest.decode("utf-8")
        oldest_ms = float(raw_oldest)
        return WindowState(
            allowed=int(result[0]) == 1,
            count=int(result[1]),
            oldest=oldest_ms / 1000 if oldest_ms >= 0 else None,
        )

    async def reset(self, key: str) -> None:
        await self._client.delete(self._get_key(key))

    async def close(self) -> None:
        await self._client.aclose()


class RateLimiter:
    """
    Sliding window admission gate.

    Rejected checks are not recorded, so a caller hammering a closed window
    does not push its own reset time further out.

    Example:
        limiter = RateLimiter()
        decision = await limiter.check("user:42", window_seconds=60, limit=100)
    """

    def __init__(
        self,
        store: SlidingWindowStore | None = None,
        fail_open: bool = True,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            store: Window store (in-memory if None)
            fail_open: Admit requests when the store is unavailable
            time_provider: Clock returning epoch seconds, injectable for tests
        """
        self._store = store or InMemoryWindowStore()
        self._fail_open = fail_open
        self._time_provider = time_provider or time.time

    @property
    def store(self) -> SlidingWindowStore:
        return self._store

    async def check(
        self,
        identifier: str,
        window_seconds: int,
        limit: int,
    ) -> RateLimitDecision:
        """
        Check and record one request for an identifier.

        Args:
            identifier: Rate limit bucket, e.g. "user:42" or "org:7"
            window_seconds: Trailing window size in seconds
            limit: Maximum admitted requests per window

        Returns:
            RateLimitDecision for this request
        """
        now = self._time_provider()

        try:
            state = await self._store.hit(identifier, now, window_seconds, limit)
        except Exception as e:
            if not self._fail_open:
                raise
            logger.error(f"Rate limit store error for {identifier}, allowing request: {e}")
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=_from_timestamp(now + window_seconds),
                identifier=identifier,
                degraded=True,
            )

        oldest = state.oldest if state.oldest is not None else now
        reset_at = _from_timestamp(oldest + window_seconds)

        if state.allowed:
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - state.count),
                reset_at=reset_at,
                identifier=identifier,
            )

        retry_after = max(1, math.ceil(oldest + window_seconds - now))
        logger.info(f"Rate limit exceeded for {identifier}: {state.count}/{limit}")
        return RateLimitDecision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
            identifier=identifier,
        )

    async def check_all(
        self,
        checks: Iterable[tuple[str, int, int]],
    ) -> RateLimitDecision:
        """
        Run several checks in order and return the most restrictive decision.

        Evaluation stops at the first rejection; later identifiers are not
        recorded.

        Args:
            checks: (identifier, window_seconds, limit) tuples

        Returns:
            The rejecting decision, or the admitted decision with the
            fewest remaining requests
        """
        most_restrictive: RateLimitDecision | None = None

        for identifier, window_seconds, limit in checks:
            decision = await self.check(identifier, window_seconds, limit)
            if not decision.allowed:
                return decision
            if most_restrictive is None or decision.remaining < most_restrictive.remaining:
                most_restrictive = decision

        if most_restrictive is None:
            raise ValueError("check_all requires at least one check")
        return most_restrictive

    async def reset(self, identifier: str) -> bool:
        """Reset the window for an identifier."""
        await self._store.reset(identifier)
        return True

    async def close(self) -> None:
        await self._store.close()


def _from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def create_rate_limiter(config: Settings | None = None) -> RateLimiter:
    """
    Create a rate limiter with the configured counter store.

    Falls back to the in-memory store when Redis is requested but no URL
    is configured.
    """
    config = config or get_settings()
    store: SlidingWindowStore

    if config.counter_backend == "redis":
        if config.redis_url:
            client = redis.from_url(config.redis_url, socket_timeout=2.0)
            store = RedisWindowStore(client, prefix=f"{config.redis_prefix}ratelimit:")
        else:
            logger.warning("Redis URL not configured, using in-memory rate limit store")
            store = InMemoryWindowStore()
    elif config.counter_backend == "memory":
        store = InMemoryWindowStore()
    else:
        raise ValueError(f"Unknown counter backend: {config.counter_backend}")

    logger.info(f"Rate limiter using {store.name} window store")
    return RateLimiter(store=store, fail_open=config.rate_limit_fail_open)
