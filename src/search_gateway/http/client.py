"""Async HTTP client for collaborator services, with bounded retries."""

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class UpstreamRateLimitError(Exception):
    """Raised when an upstream service keeps answering 429."""

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(f"Upstream rate limited. Retry after: {retry_after}s")


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpClient:
    """
    Thin wrapper over ``httpx.AsyncClient``.

    Timeouts, connection errors and 5xx answers are retried with exponential
    backoff. A 429 is retried only when its Retry-After fits under
    ``max_retry_after``; a search request must not sleep for minutes behind
    a throttled engine.
    """

    DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)

    def __init__(
        self,
        base_url: str | None = None,
        timeout: httpx.Timeout | None = None,
        max_retries: int = 2,
        backoff_factor: float = 0.25,
        max_retry_after: float = 5.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.max_retry_after = max_retry_after
        self._client_kwargs: dict[str, Any] = {
            "base_url": base_url or "",
            "timeout": timeout or self.DEFAULT_TIMEOUT,
            "headers": headers or {},
            "transport": transport,
        }
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(**self._client_kwargs)
        return self._client

    def _backoff(self, attempt: int) -> float:
        return self.backoff_factor * (2**attempt)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Raises:
            UpstreamRateLimitError: 429 with no usable retry left
            httpx.HTTPStatusError: 5xx after the last attempt
            httpx.TimeoutException, httpx.ConnectError: after the last attempt
        """
        for attempt in range(self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                response = await self._http().request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if last_attempt:
                    raise
                delay = self._backoff(attempt)
                logger.warning(f"{type(e).__name__} on {method} {url}, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            if response.status_code == 429:
                retry_after = _parse_retry_after(response)
                wait = self.max_retry_after if retry_after is None else retry_after
                if last_attempt or wait > self.max_retry_after:
                    raise UpstreamRateLimitError(retry_after)
                logger.warning(f"Upstream rate limited on {method} {url}, waiting {wait}s")
                await asyncio.sleep(wait)
                continue

            if response.status_code >= 500 and not last_attempt:
                delay = self._backoff(attempt)
                logger.warning(f"Upstream {response.status_code} on {method} {url}, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            return response

        raise AssertionError("unreachable")

    async def post_json(self, url: str, data: Any, **kwargs: Any) -> Any:
        """POST a JSON body and decode the JSON answer; non-2xx raises."""
        response = await self.request("POST", url, json=data, **kwargs)
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
