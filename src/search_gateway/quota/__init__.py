"""
Quota module for search admission control.

Provides sliding window rate limiting per caller and metered monthly
quotas per organization, each over pluggable storage.
"""

from search_gateway.quota.manager import (
    PLAN_LIMITS,
    InMemoryQuotaStore,
    PlanTier,
    QuotaCheck,
    QuotaConsumption,
    QuotaManager,
    QuotaRecord,
    QuotaResource,
    QuotaStore,
    SqlQuotaStore,
    create_quota_manager,
)
from search_gateway.quota.limiter import (
    InMemoryWindowStore,
    RateLimitDecision,
    RateLimiter,
    RedisWindowStore,
    SlidingWindowStore,
    create_rate_limiter,
)

__all__ = [
    "PLAN_LIMITS",
    "InMemoryQuotaStore",
    "InMemoryWindowStore",
    "PlanTier",
    "QuotaCheck",
    "QuotaConsumption",
    "QuotaManager",
    "QuotaRecord",
    "QuotaResource",
    "QuotaStore",
    "RateLimitDecision",
    "RateLimiter",
    "RedisWindowStore",
    "SlidingWindowStore",
    "SqlQuotaStore",
    "create_quota_manager",
    "create_rate_limiter",
]
