"""
Search Gateway API Client
HTTP client with sync and async support.
"""

from __future__ import annotations

import asyncio
import os
import time
from typing import Any, Optional

import httpx

from .models import QuotaStatus, SearchMetrics, SearchResponse


class SearchGatewayAPIError(Exception):
    """Error response from the gateway."""

    def __init__(
        self,
        status_code: int,
        message: str,
        code: str = "",
        details: Optional[dict] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(f"{status_code} {code}: {message}")


class RateLimitedError(SearchGatewayAPIError):
    """Raised on 429; ``retry_after`` is in seconds."""

    def __init__(self, message: str, retry_after: float, details: Optional[dict] = None):
        self.retry_after = retry_after
        super().__init__(429, message, "rate_limited", details)


class QuotaExceededError(SearchGatewayAPIError):
    """Raised on 402 when the organization has used its quota."""

    def __init__(self, message: str, details: Optional[dict] = None):
        details = details or {}
        self.used = details.get("used")
        self.limit = details.get("limit")
        super().__init__(402, message, "quota_exceeded", details)


def _raise_for_error(response: httpx.Response) -> None:
    if response.status_code < 400:
        return

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = body.get("error") or response.reason_phrase
    details = body.get("details") or {}

    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After") or details.get("retry_after") or 1
        raise RateLimitedError(message, float(retry_after), details)
    if response.status_code == 402:
        raise QuotaExceededError(message, details)
    raise SearchGatewayAPIError(response.status_code, message, body.get("code", ""), details)


def _build_headers(
    api_key: Optional[str],
    user_id: Optional[str],
    org_id: Optional[str],
) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if user_id:
        headers["X-User-Id"] = user_id
    if org_id:
        headers["X-Org-Id"] = org_id
    return headers


def _search_payload(
    query: str,
    limit: int,
    threshold: float,
    mode: str,
    filters: Optional[dict],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "query": query,
        "limit": limit,
        "threshold": threshold,
        "mode": mode,
    }
    if filters:
        payload["filters"] = filters
    return payload


class SearchGatewayClient:
    """
    Python client for the Search Gateway API.

    Example:
        ```python
        client = SearchGatewayClient(user_id="u_1", org_id="acme")

        response = client.search("quarterly roadmap", mode="hybrid")
        for hit in response.results:
            print(hit.score, hit.content)

        print(client.get_quota()["search"].remaining)
        ```
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        user_id: Optional[str] = None,
        org_id: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 0,
        max_backoff: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API server URL (default: localhost:8000)
            api_key: Optional API key for authentication
            user_id: Caller user id (X-User-Id)
            org_id: Caller organization id (X-Org-Id)
            timeout: Request timeout in seconds
            max_retries: Times to retry a rate limited search after Retry-After
            max_backoff: Longest Retry-After the client will wait out
            transport: Custom httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("SEARCH_GATEWAY_API_KEY")
        self.user_id = user_id or os.getenv("SEARCH_GATEWAY_USER_ID")
        self.org_id = org_id or os.getenv("SEARCH_GATEWAY_ORG_ID")
        self.max_retries = max_retries
        self.max_backoff = max_backoff

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=_build_headers(self.api_key, self.user_id, self.org_id),
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> SearchGatewayClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> dict:
        """Check API health status."""
        response = self._client.get("/health")
        _raise_for_error(response)
        return response.json()

    def is_healthy(self) -> bool:
        """Quick health check returning boolean."""
        try:
            return self.health().get("status") == "healthy"
        except (httpx.HTTPError, SearchGatewayAPIError):
            return False

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        limit: int = 20,
        threshold: float = 0.5,
        mode: str = "semantic",
        filters: Optional[dict] = None,
    ) -> SearchResponse:
        """
        Run a search.

        Args:
            query: Search text
            limit: Maximum results (1-100)
            threshold: Minimum relevance score (0-1)
            mode: semantic, hybrid or keyword
            filters: Optional recording_ids, source_types, date_from, date_to, tags

        Returns:
            SearchResponse

        Raises:
            RateLimitedError: When still rate limited after ``max_retries``
            QuotaExceededError: When the organization is out of quota
        """
        payload = _search_payload(query, limit, threshold, mode, filters)

        attempt = 0
        while True:
            response = self._client.post("/v1/search", json=payload)
            try:
                _raise_for_error(response)
            except RateLimitedError as e:
                if attempt >= self.max_retries or e.retry_after > self.max_backoff:
                    raise
                attempt += 1
                time.sleep(e.retry_after)
                continue
            return SearchResponse.from_dict(response.json(), response.headers)

    def send_feedback(
        self,
        search_id: str,
        result_id: str,
        feedback_type: str,
        rating: Optional[int] = None,
    ) -> str:
        """Record feedback on a result; returns the feedback id."""
        payload: dict[str, Any] = {
            "search_id": search_id,
            "result_id": result_id,
            "feedback_type": feedback_type,
        }
        if rating is not None:
            payload["rating"] = rating

        response = self._client.post("/v1/search/feedback", json=payload)
        _raise_for_error(response)
        return response.json()["feedback_id"]

    # =========================================================================
    # Quota, analytics & cache
    # =========================================================================

    def get_quota(self) -> dict[str, QuotaStatus]:
        """Get quota usage for every metered resource."""
        response = self._client.get("/v1/quota")
        _raise_for_error(response)
        data = response.json()
        return {
            name: QuotaStatus.from_dict(name, record)
            for name, record in data.get("resources", {}).items()
        }

    def get_metrics(self, days: int = 7) -> SearchMetrics:
        """Get search analytics for the last ``days`` days."""
        response = self._client.get("/v1/analytics/search", params={"days": days})
        _raise_for_error(response)
        return SearchMetrics.from_dict(response.json())

    def cache_stats(self) -> dict:
        response = self._client.get("/v1/cache/stats")
        _raise_for_error(response)
        return response.json()

    def clear_cache(self) -> int:
        """Drop the organization's cached searches; returns entries removed."""
        response = self._client.delete("/v1/cache")
        _raise_for_error(response)
        return response.json().get("cleared", 0)


class AsyncSearchGatewayClient:
    """Async version of SearchGatewayClient."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        user_id: Optional[str] = None,
        org_id: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 0,
        max_backoff: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("SEARCH_GATEWAY_API_KEY")
        self.user_id = user_id or os.getenv("SEARCH_GATEWAY_USER_ID")
        self.org_id = org_id or os.getenv("SEARCH_GATEWAY_ORG_ID")
        self.max_retries = max_retries
        self.max_backoff = max_backoff

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=_build_headers(self.api_key, self.user_id, self.org_id),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> AsyncSearchGatewayClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def health(self) -> dict:
        response = await self._client.get("/health")
        _raise_for_error(response)
        return response.json()

    async def search(
        self,
        query: str,
        limit: int = 20,
        threshold: float = 0.5,
        mode: str = "semantic",
        filters: Optional[dict] = None,
    ) -> SearchResponse:
        payload = _search_payload(query, limit, threshold, mode, filters)

        attempt = 0
        while True:
            response = await self._client.post("/v1/search", json=payload)
            try:
                _raise_for_error(response)
            except RateLimitedError as e:
                if attempt >= self.max_retries or e.retry_after > self.max_backoff:
                    raise
                attempt += 1
                await asyncio.sleep(e.retry_after)
                continue
            return SearchResponse.from_dict(response.json(), response.headers)

    async def get_quota(self) -> dict[str, QuotaStatus]:
        response = await self._client.get("/v1/quota")
        _raise_for_error(response)
        data = response.json()
        return {
            name: QuotaStatus.from_dict(name, record)
            for name, record in data.get("resources", {}).items()
        }

    async def get_metrics(self, days: int = 7) -> SearchMetrics:
        response = await self._client.get("/v1/analytics/search", params={"days": days})
        _raise_for_error(response)
        return SearchMetrics.from_dict(response.json())
