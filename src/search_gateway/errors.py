"""Error taxonomy for the search pipeline.

Every error that can reach a caller carries the HTTP-equivalent status,
a stable machine-readable code and whatever structured details a client
needs to back off without guessing (retry-after, remaining quota).
"""

from __future__ import annotations

from typing import Any


class SearchGatewayError(Exception):
    """Base class for errors surfaced by the search pipeline."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.headers = headers or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(SearchGatewayError):
    """Raised when a search request is malformed."""

    status_code = 400
    code = "validation_failed"


class AuthError(SearchGatewayError):
    """Raised when the caller's identity cannot be resolved."""

    status_code = 401
    code = "unauthorized"


class QuotaExceededError(SearchGatewayError):
    """Raised when an organization has no metered quota left."""

    status_code = 402
    code = "quota_exceeded"

    def __init__(
        self,
        used: int,
        limit: int,
        resource: str = "search",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            f"Search quota exceeded: {used}/{limit} {resource} used this period",
            details={
                "resource": resource,
                "used": used,
                "limit": limit,
                "remaining": max(0, limit - used),
            },
            headers=headers,
        )
        self.used = used
        self.limit = limit
        self.resource = resource


class RateLimitError(SearchGatewayError):
    """Raised when a caller exceeds its request rate."""

    status_code = 429
    code = "rate_limited"

    def __init__(
        self,
        identifier: str,
        limit: int,
        remaining: int,
        retry_after: int,
    ) -> None:
        super().__init__(
            f"Search rate limit exceeded for {identifier}; retry after {retry_after}s",
            details={
                "limit": limit,
                "remaining": remaining,
                "retry_after": retry_after,
            },
            headers={
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": str(remaining),
                "Retry-After": str(retry_after),
            },
        )
        self.identifier = identifier
        self.limit = limit
        self.remaining = remaining
        self.retry_after = retry_after


class ComputeError(SearchGatewayError):
    """Raised when the search engine or a collaborator store fails."""

    status_code = 500
    code = "internal_error"


class CacheUnavailable(Exception):
    """Raised by a cache layer that cannot serve a request.

    Never surfaced to callers: the multi-layer cache absorbs it and
    treats the lookup as a miss.
    """
