"""
Search analytics tracker.
Records search events and result feedback without slowing down requests.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import logging

from .storage import AnalyticsStorage


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class FeedbackType(str, Enum):
    RELEVANT = "relevant"
    IRRELEVANT = "irrelevant"
    CLICKED = "clicked"


@dataclass
class SearchAnalyticsEvent:
    """A single search request as seen by the pipeline."""

    org_id: str
    user_id: str
    query: str
    mode: str
    result_count: int
    cache_hit: bool
    latency_ms: float
    error: Optional[str] = None
    filters: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "org_id": self.org_id,
            "user_id": self.user_id,
            "query": self.query,
            "mode": self.mode,
            "result_count": self.result_count,
            "cache_hit": self.cache_hit,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "filters": self.filters,
        }


@dataclass
class SearchFeedback:
    """A user's judgement of one result of a past search."""

    search_id: str
    result_id: str
    feedback_type: FeedbackType
    rating: Optional[int] = None
    org_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        self.feedback_type = FeedbackType(self.feedback_type)
        if self.rating is not None and not 1 <= self.rating <= 5:
            raise ValueError("rating must be between 1 and 5")


@dataclass
class SearchMetrics:
    """Aggregated search metrics for one organization."""

    org_id: str
    days: int
    total_searches: int = 0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    cache_hit_rate: float = 0.0
    error_count: int = 0
    avg_result_count: float = 0.0
    top_queries: list[dict] = field(default_factory=list)
    searches_by_mode: dict[str, int] = field(default_factory=dict)
    feedback: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "org_id": self.org_id,
            "days": self.days,
            "total_searches": self.total_searches,
            "avg_latency_ms": self.avg_latency_ms,
            "p50_latency_ms": self.p50_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "p99_latency_ms": self.p99_latency_ms,
            "cache_hit_rate": self.cache_hit_rate,
            "error_count": self.error_count,
            "avg_result_count": self.avg_result_count,
            "top_queries": self.top_queries,
            "searches_by_mode": self.searches_by_mode,
            "feedback": self.feedback,
        }


class SearchTracker:
    """
    Best-effort recorder of search analytics.

    Writes run in worker threads. ``track_search_async`` returns at once and
    never raises; failures are logged and dropped.
    """

    def __init__(self, storage: Optional[AnalyticsStorage] = None):
        self.storage = storage
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_path(cls, db_path: str) -> "SearchTracker":
        storage = AnalyticsStorage(db_path)
        logger.info(f"Analytics initialized with storage: {db_path}")
        return cls(storage)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def track_search(self, event: SearchAnalyticsEvent) -> Optional[str]:
        """Persist a search event and return its id, or None on failure."""
        if self.storage is None:
            return None
        try:
            return await asyncio.to_thread(self.storage.insert_event, event)
        except Exception as e:
            logger.error(f"Failed to track search: {e}")
            return None

    def track_search_async(self, event: SearchAnalyticsEvent) -> None:
        """Schedule a search event write on the running loop."""
        try:
            task = asyncio.get_running_loop().create_task(self.track_search(event))
        except Exception as e:
            logger.error(f"Failed to schedule search tracking: {e}")
            return

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def track_feedback(self, feedback: SearchFeedback) -> Optional[str]:
        """Persist result feedback and return its id, or None on failure."""
        if self.storage is None:
            return None
        try:
            return await asyncio.to_thread(self.storage.insert_feedback, feedback)
        except Exception as e:
            logger.error(f"Failed to track feedback: {e}")
            return None

    async def get_metrics(self, org_id: str, days: int = 7) -> SearchMetrics:
        """Get aggregated metrics, after pending writes have landed."""
        await self.flush()

        if self.storage is None:
            return SearchMetrics(org_id=org_id, days=days)

        summary = await asyncio.to_thread(self.storage.get_search_metrics, org_id, days)
        return SearchMetrics(org_id=org_id, days=days, **summary)

    async def prune(self, keep_days: int) -> int:
        if self.storage is None:
            return 0
        deleted = await asyncio.to_thread(self.storage.prune_old_events, keep_days)
        if deleted:
            logger.info(f"Pruned {deleted} search events older than {keep_days} days")
        return deleted

    async def flush(self) -> None:
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
