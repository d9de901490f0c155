"""Tests for sliding window rate limiting."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from search_gateway.config import Settings
from search_gateway.quota.limiter import (
    InMemoryWindowStore,
    RateLimitDecision,
    RateLimiter,
    RedisWindowStore,
    SlidingWindowStore,
    create_rate_limiter,
)


class TestRateLimitDecision:
    """Tests for RateLimitDecision."""

    def test_headers_when_allowed(self) -> None:
        decision = RateLimitDecision(
            allowed=True,
            limit=100,
            remaining=42,
            reset_at=datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        )
        headers = decision.headers()

        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "42"
        assert headers["X-RateLimit-Reset"] == "1735732800"
        assert "Retry-After" not in headers

    def test_headers_when_rejected(self) -> None:
        decision = RateLimitDecision(
            allowed=False,
            limit=100,
            remaining=0,
            reset_at=datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            retry_after_seconds=17,
        )
        headers = decision.headers()

        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "17"

    def test_to_dict(self) -> None:
        decision = RateLimitDecision(
            allowed=True,
            limit=10,
            remaining=9,
            reset_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        data = decision.to_dict()

        assert data["allowed"] is True
        assert data["reset_at"] == "2025-01-01T00:00:00+00:00"
        assert data["retry_after_seconds"] is None


class TestSlidingWindow:
    """Tests for RateLimiter with the in-memory store."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_rejects(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)

        for i in range(5):
            decision = await limiter.check("user:u_1", window_seconds=60, limit=5)
            assert decision.allowed is True
            assert decision.remaining == 4 - i

        decision = await limiter.check("user:u_1", window_seconds=60, limit=5)
        assert decision.allowed is False
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_allows_again_after_window(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        for _ in range(3):
            await limiter.check("user:u_1", 60, 3)
        assert (await limiter.check("user:u_1", 60, 3)).allowed is False

        clock.advance(60.001)

        assert (await limiter.check("user:u_1", 60, 3)).allowed is True

    @pytest.mark.asyncio
    async def test_window_slides(self, clock) -> None:
        """Only requests older than the window free up capacity."""
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("k", 60, 2)
        clock.advance(30)
        await limiter.check("k", 60, 2)

        clock.advance(31)  # first request left the window, second has not
        assert (await limiter.check("k", 60, 2)).allowed is True
        assert (await limiter.check("k", 60, 2)).allowed is False

    @pytest.mark.asyncio
    async def test_retry_after_tracks_oldest_request(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("k", 60, 2)
        clock.advance(20)
        await limiter.check("k", 60, 2)
        clock.advance(15)

        decision = await limiter.check("k", 60, 2)

        assert decision.allowed is False
        assert decision.retry_after_seconds == 25

    @pytest.mark.asyncio
    async def test_retry_after_is_at_least_one_second(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("k", 60, 1)
        clock.advance(59.9)

        decision = await limiter.check("k", 60, 1)

        assert decision.retry_after_seconds == 1

    @pytest.mark.asyncio
    async def test_rejections_are_not_recorded(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("k", 60, 1)
        for _ in range(10):
            clock.advance(1)
            await limiter.check("k", 60, 1)

        clock.advance(50)  # 60s after the only admitted request
        assert (await limiter.check("k", 60, 1)).allowed is True

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("user:a", 60, 1)

        assert (await limiter.check("user:a", 60, 1)).allowed is False
        assert (await limiter.check("user:b", 60, 1)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_admit_exactly_limit(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)

        decisions = await asyncio.gather(
            *(limiter.check("org:o", 60, 10) for _ in range(25))
        )

        assert sum(d.allowed for d in decisions) == 10

    @pytest.mark.asyncio
    async def test_reset(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("k", 60, 1)

        assert await limiter.reset("k") is True
        assert (await limiter.check("k", 60, 1)).allowed is True


class TestInMemoryWindowStore:
    """Tests for idle window cleanup."""

    @pytest.mark.asyncio
    async def test_idle_identifiers_are_swept(self, clock) -> None:
        store = InMemoryWindowStore(sweep_interval_seconds=30)
        limiter = RateLimiter(store=store, time_provider=clock)
        for i in range(50):
            await limiter.check(f"user:{i}", 60, 5)
        assert store.size() == 50

        clock.advance(61)
        await limiter.check("user:active", 60, 5)

        assert store.size() == 1
        assert len(store._locks) == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_open_windows(self, clock) -> None:
        store = InMemoryWindowStore()
        await store.hit("short", clock(), 10, 5)
        await store.hit("long", clock(), 3600, 5)

        assert store.sweep(clock() + 11) == 1
        assert store.size() == 1
        assert (await store.hit("long", clock() + 12, 3600, 5)).count == 2

    @pytest.mark.asyncio
    async def test_empty_window_is_not_stored(self, clock) -> None:
        store = InMemoryWindowStore()

        state = await store.hit("k", clock(), 60, 0)

        assert state.allowed is False
        assert store.size() == 0


class TestCheckAll:
    """Tests for combined user/org checks."""

    @pytest.mark.asyncio
    async def test_returns_most_restrictive_allowed(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)

        decision = await limiter.check_all([("user:u", 60, 100), ("org:o", 60, 5)])

        assert decision.allowed is True
        assert decision.identifier == "org:o"
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_stops_at_first_rejection(self, clock) -> None:
        limiter = RateLimiter(time_provider=clock)
        await limiter.check("user:u", 60, 1)

        decision = await limiter.check_all([("user:u", 60, 1), ("org:o", 60, 5)])

        assert decision.allowed is False
        assert decision.identifier == "user:u"
        # org window untouched
        assert (await limiter.check("org:o", 60, 5)).remaining == 4

    @pytest.mark.asyncio
    async def test_requires_checks(self) -> None:
        with pytest.raises(ValueError):
            await RateLimiter().check_all([])


class FailingStore(SlidingWindowStore):
    @property
    def name(self) -> str:
        return "failing"

    async def hit(self, key, now, window_seconds, limit):
        raise ConnectionError("store down")

    async def reset(self, key) -> None:
        raise ConnectionError("store down")


class TestStoreFailures:
    """Tests for behaviour when the window store is unavailable."""

    @pytest.mark.asyncio
    async def test_fails_open(self) -> None:
        limiter = RateLimiter(store=FailingStore())

        decision = await limiter.check("k", 60, 10)

        assert decision.allowed is True
        assert decision.degraded is True
        assert decision.remaining == 10

    @pytest.mark.asyncio
    async def test_fail_closed_propagates(self) -> None:
        limiter = RateLimiter(store=FailingStore(), fail_open=False)

        with pytest.raises(ConnectionError):
            await limiter.check("k", 60, 10)


class TestRedisWindowStore:
    """Tests for the Lua-backed store with a mocked client."""

    def _client(self, result) -> tuple[MagicMock, AsyncMock]:
        script = AsyncMock(return_value=result)
        client = MagicMock()
        client.register_script.return_value = script
        client.delete = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client, script

    @pytest.mark.asyncio
    async def test_hit_passes_milliseconds(self) -> None:
        client, script = self._client([1, 1, b"1700000000000"])
        store = RedisWindowStore(client, prefix="rl:")

        state = await store.hit("user:u_1", now=1_700_000_000.0, window_seconds=60, limit=100)

        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["rl:user:u_1"]
        assert kwargs["args"][:3] == [1_700_000_000_000, 60_000, 100]
        assert state.allowed is True
        assert state.count == 1
        assert state.oldest == 1_700_000_000.0

    @pytest.mark.asyncio
    async def test_rejection_through_limiter(self, clock) -> None:
        oldest_ms = int((clock.now - 45) * 1000)
        client, _ = self._client([0, 100, str(oldest_ms).encode()])
        limiter = RateLimiter(store=RedisWindowStore(client), time_provider=clock)

        decision = await limiter.check("user:u_1", 60, 100)

        assert decision.allowed is False
        assert decision.retry_after_seconds == 15

    @pytest.mark.asyncio
    async def test_empty_window(self) -> None:
        client, _ = self._client([1, 1, "-1"])
        store = RedisWindowStore(client)

        state = await store.hit("k", now=1.0, window_seconds=60, limit=5)

        assert state.oldest is None

    @pytest.mark.asyncio
    async def test_reset_and_close(self) -> None:
        client, _ = self._client([1, 1, "-1"])
        store = RedisWindowStore(client, prefix="rl:")

        await store.reset("k")
        await store.close()

        client.delete.assert_awaited_once_with("rl:k")
        client.aclose.assert_awaited_once()


class TestCreateRateLimiter:
    """Tests for limiter construction from settings."""

    def test_memory_store(self) -> None:
        limiter = create_rate_limiter(Settings(_env_file=None, counter_backend="memory"))
        assert isinstance(limiter.store, InMemoryWindowStore)

    def test_redis_without_url_falls_back(self) -> None:
        limiter = create_rate_limiter(Settings(_env_file=None, counter_backend="redis", redis_url=None))
        assert isinstance(limiter.store, InMemoryWindowStore)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError):
            create_rate_limiter(Settings(_env_file=None, counter_backend="dynamo"))
