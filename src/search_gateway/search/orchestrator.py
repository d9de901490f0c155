"""
Search request pipeline.

Every search passes the same gates in a fixed order:

    AUTHENTICATING -> VALIDATING -> RATE_LIMITING -> QUOTA_CHECKING
    -> CACHE_LOOKUP -> [COMPUTING] -> QUOTA_CONSUMING -> TRACKING -> RESPONDING

A request rejected at one gate never touches the gates after it: a rate
limited caller costs no quota, and a caller out of quota never reaches the
cache or the engine.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from search_gateway.analytics.tracker import SearchAnalyticsEvent, SearchTracker
from search_gateway.auth import HeaderIdentityResolver, Identity, IdentityResolver
from search_gateway.cache.factory import initialize_search_cache
from search_gateway.cache.multi_layer import LAYER_NONE, MultiLayerCache
from search_gateway.config import Settings, get_settings
from search_gateway.errors import (
    ComputeError,
    QuotaExceededError,
    RateLimitError,
    SearchGatewayError,
    ValidationError,
)
from search_gateway.quota.limiter import RateLimitDecision, RateLimiter, create_rate_limiter
from search_gateway.quota.manager import QuotaManager, create_quota_manager
from search_gateway.search.engine import SearchEngine, create_search_engine
from search_gateway.search.fingerprint import search_fingerprint
from search_gateway.search.models import (
    QuotaSnapshot,
    SearchRequest,
    SearchResponse,
    SearchResult,
    parse_search_request,
)

logger = logging.getLogger(__name__)

SEARCH_RESOURCE = "search"


class SearchState(str, Enum):
    """Pipeline stages, in execution order."""

    AUTHENTICATING = "authenticating"
    VALIDATING = "validating"
    RATE_LIMITING = "rate_limiting"
    QUOTA_CHECKING = "quota_checking"
    CACHE_LOOKUP = "cache_lookup"
    COMPUTING = "computing"
    QUOTA_CONSUMING = "quota_consuming"
    TRACKING = "tracking"
    RESPONDING = "responding"


@dataclass
class SearchServices:
    """Process-wide components the pipeline depends on."""

    rate_limiter: RateLimiter
    quota_manager: QuotaManager
    cache: MultiLayerCache
    tracker: SearchTracker
    engine: SearchEngine
    identity_resolver: IdentityResolver

    @classmethod
    async def create(cls, config: Settings | None = None) -> "SearchServices":
        """Build every component from configuration."""
        config = config or get_settings()
        return cls(
            rate_limiter=create_rate_limiter(config),
            quota_manager=create_quota_manager(config),
            cache=await initialize_search_cache(config),
            tracker=SearchTracker.from_path(config.analytics_db_path),
            engine=create_search_engine(config.search_engine_url),
            identity_resolver=HeaderIdentityResolver(config.api_key),
        )

    async def close(self) -> None:
        """Flush analytics and release connections."""
        await self.tracker.flush()
        for name, closer in (
            ("cache", self.cache.close),
            ("rate limiter", self.rate_limiter.close),
            ("quota manager", self.quota_manager.close),
            ("search engine", self.engine.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")


@dataclass
class SearchOutcome:
    """A successful search: response body plus headers to send with it."""

    response: SearchResponse
    headers: dict[str, str] = field(default_factory=dict)
    identity: Identity | None = None


class SearchOrchestrator:
    """
    Runs search requests through admission control, cache and engine.

    Example:
        orchestrator = SearchOrchestrator(services)
        outcome = await orchestrator.search(request.headers, body)
    """

    def __init__(self, services: SearchServices, config: Settings | None = None) -> None:
        self.services = services
        self.config = config or get_settings()

    async def search(self, headers: Mapping[str, str], payload: Any) -> SearchOutcome:
        """
        Execute one search request.

        Args:
            headers: Request headers carrying the caller's identity
            payload: Raw request body (dict) or a SearchRequest

        Returns:
            SearchOutcome with the response body and rate limit headers

        Raises:
            SearchGatewayError: Subclass matching the stage that rejected
                the request (401, 400, 429, 402 or 500)
        """
        state = SearchState.AUTHENTICATING
        started = time.perf_counter()

        try:
            identity = await self.services.identity_resolver.resolve(headers)

            state = SearchState.VALIDATING
            request = self._validate(payload)

            state = SearchState.RATE_LIMITING
            decision = await self._admit(identity)

            state = SearchState.QUOTA_CHECKING
            quota = await self.services.quota_manager.check_quota(identity.org_id, SEARCH_RESOURCE)
            if not quota.available:
                raise QuotaExceededError(
                    quota.used, quota.limit, SEARCH_RESOURCE, headers=decision.headers()
                )

            state = SearchState.CACHE_LOOKUP
            results, cache_layer = await self._lookup(identity, request, started)
            cache_hit = cache_layer != LAYER_NONE

            state = SearchState.QUOTA_CONSUMING
            if cache_hit and not self.config.bill_cache_hits:
                snapshot = QuotaSnapshot(used=quota.used, limit=quota.limit, remaining=quota.remaining)
            else:
                snapshot = await self._consume(identity, request, decision, started, cache_hit, len(results))

            state = SearchState.TRACKING
            latency_ms = _elapsed_ms(started)
            search_id = self._track(
                identity, request, len(results), cache_hit, latency_ms
            )

            state = SearchState.RESPONDING
            response = SearchResponse(
                results=results,
                cache_hit=cache_hit,
                cache_layer=cache_layer,
                latency=latency_ms,
                quota=snapshot,
                search_id=search_id,
            )
            logger.debug(
                f"Search for {identity.org_id} served in {latency_ms}ms "
                f"(cache={cache_layer}, results={len(results)})"
            )
            return SearchOutcome(response=response, headers=decision.headers(), identity=identity)

        except SearchGatewayError as e:
            logger.info(f"Search rejected at {state.value}: {e.code} ({e.message})")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during {state.value}")
            raise ComputeError("Internal error while processing search") from e

    def _validate(self, payload: Any) -> SearchRequest:
        request = parse_search_request(payload)
        if len(request.query) > self.config.max_query_length:
            raise ValidationError(
                f"Query exceeds {self.config.max_query_length} characters",
                details={"errors": [{"field": "query", "message": "too long"}]},
            )
        return request

    async def _admit(self, identity: Identity) -> RateLimitDecision:
        decision = await self.services.rate_limiter.check_all([
            (identity.user_key, self.config.user_rate_window_seconds, self.config.user_rate_limit),
            (identity.org_key, self.config.org_rate_window_seconds, self.config.org_rate_limit),
        ])
        if decision.allowed:
            return decision

        error = RateLimitError(
            identifier=decision.identifier,
            limit=decision.limit,
            remaining=0,
            retry_after=decision.retry_after_seconds or 1,
        )
        error.headers.update(decision.headers())
        raise error

    async def _lookup(
        self,
        identity: Identity,
        request: SearchRequest,
        started: float,
    ) -> tuple[list[SearchResult], str]:
        engine = self.services.engine
        timeout = self.config.search_timeout_seconds

        async def compute() -> list[dict[str, Any]]:
            results = await asyncio.wait_for(
                engine.compute(request, identity.org_id), timeout=timeout
            )
            # Cached as plain JSON so the shared tier can store it
            return [result.model_dump(mode="json") for result in results]

        key = search_fingerprint(identity.org_id, request)
        try:
            raw, layer = await self.services.cache.get_with_status(key, compute)
        except asyncio.TimeoutError as e:
            self._track(identity, request, 0, False, _elapsed_ms(started), error="timeout")
            raise ComputeError(
                "Search timed out", details={"timeout_seconds": timeout}
            ) from e
        except Exception as e:
            logger.error(f"Search engine failed for {identity.org_id}: {e}")
            self._track(identity, request, 0, False, _elapsed_ms(started), error=str(e) or type(e).__name__)
            raise ComputeError("Search failed") from e

        return [SearchResult.model_validate(item) for item in raw or []], layer

    async def _consume(
        self,
        identity: Identity,
        request: SearchRequest,
        decision: RateLimitDecision,
        started: float,
        cache_hit: bool,
        result_count: int,
    ) -> QuotaSnapshot:
        try:
            consumption = await self.services.quota_manager.consume_quota(
                identity.org_id, SEARCH_RESOURCE, 1
            )
        except Exception as e:
            logger.error(f"Quota consume failed for {identity.org_id}: {e}")
            self._track(
                identity, request, result_count, cache_hit, _elapsed_ms(started),
                error=str(e) or type(e).__name__,
            )
            raise ComputeError("Quota ledger unavailable") from e

        if not consumption.success:
            # Lost a race with concurrent requests between check and consume
            self._track(
                identity, request, result_count, cache_hit, _elapsed_ms(started),
                error="quota_exceeded",
            )
            raise QuotaExceededError(
                consumption.used, consumption.limit, SEARCH_RESOURCE, headers=decision.headers()
            )
        return QuotaSnapshot(
            used=consumption.used,
            limit=consumption.limit,
            remaining=consumption.remaining,
        )

    def _track(
        self,
        identity: Identity,
        request: SearchRequest,
        result_count: int,
        cache_hit: bool,
        latency_ms: float,
        error: str | None = None,
    ) -> str | None:
        event = SearchAnalyticsEvent(
            org_id=identity.org_id,
            user_id=identity.user_id,
            query=request.query,
            mode=request.mode.value,
            result_count=result_count,
            cache_hit=cache_hit,
            latency_ms=latency_ms,
            error=error,
            filters=request.filters.model_dump(mode="json", exclude_none=True),
        )
        try:
            self.services.tracker.track_search_async(event)
        except Exception as e:
            logger.error(f"Failed to track search: {e}")
            return None
        return event.id


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
