"""
Search Gateway Client SDK
Python client library for the Search Gateway API.
"""

from .client import (
    AsyncSearchGatewayClient,
    QuotaExceededError,
    RateLimitedError,
    SearchGatewayAPIError,
    SearchGatewayClient,
)
from .models import (
    QuotaStatus,
    SearchHit,
    SearchMetrics,
    SearchResponse,
)

__version__ = "0.1.0"
__all__ = [
    "AsyncSearchGatewayClient",
    "QuotaExceededError",
    "QuotaStatus",
    "RateLimitedError",
    "SearchGatewayAPIError",
    "SearchGatewayClient",
    "SearchHit",
    "SearchMetrics",
    "SearchResponse",
]
