"""
Dataclass models for Search Gateway API responses.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class SearchHit:
    """A single search result."""

    id: str
    content: str
    score: float
    recording_id: Optional[str] = None
    source_type: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "SearchHit":
        return cls(
            id=data.get("id", ""),
            content=data.get("content", ""),
            score=data.get("score", 0.0),
            recording_id=data.get("recording_id"),
            source_type=data.get("source_type"),
            metadata=data.get("metadata", {}),
        )


@dataclass
class SearchResponse:
    """Response of a search call."""

    results: list[SearchHit]
    cache_hit: bool
    cache_layer: str
    latency_ms: float
    quota_used: int
    quota_limit: int
    quota_remaining: int
    search_id: Optional[str] = None
    rate_limit_remaining: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict, headers: Optional[dict] = None) -> "SearchResponse":
        quota = data.get("quota", {})
        remaining_header = (headers or {}).get("x-ratelimit-remaining")
        return cls(
            results=[SearchHit.from_dict(r) for r in data.get("results", [])],
            cache_hit=data.get("cache_hit", False),
            cache_layer=data.get("cache_layer", "none"),
            latency_ms=data.get("latency", 0.0),
            quota_used=quota.get("used", 0),
            quota_limit=quota.get("limit", 0),
            quota_remaining=quota.get("remaining", 0),
            search_id=data.get("search_id"),
            rate_limit_remaining=int(remaining_header) if remaining_header else None,
        )


@dataclass
class QuotaStatus:
    """Usage of one metered resource."""

    resource: str
    plan_tier: str
    used: int
    limit: int
    remaining: int
    reset_at: str

    @classmethod
    def from_dict(cls, resource: str, data: dict) -> "QuotaStatus":
        return cls(
            resource=resource,
            plan_tier=data.get("plan_tier", "free"),
            used=data.get("used", 0),
            limit=data.get("limit", 0),
            remaining=data.get("remaining", 0),
            reset_at=data.get("reset_at", ""),
        )


@dataclass
class SearchMetrics:
    """Search analytics for an organization."""

    total_searches: int
    avg_latency_ms: float
    p50_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    cache_hit_rate: float
    error_count: int
    top_queries: list[dict]
    searches_by_mode: dict[str, int]

    @classmethod
    def from_dict(cls, data: dict) -> "SearchMetrics":
        return cls(
            total_searches=data.get("total_searches", 0),
            avg_latency_ms=data.get("avg_latency_ms", 0.0),
            p50_latency_ms=data.get("p50_latency_ms", 0.0),
            p95_latency_ms=data.get("p95_latency_ms", 0.0),
            p99_latency_ms=data.get("p99_latency_ms", 0.0),
            cache_hit_rate=data.get("cache_hit_rate", 0.0),
            error_count=data.get("error_count", 0),
            top_queries=data.get("top_queries", []),
            searches_by_mode=data.get("searches_by_mode", {}),
        )
