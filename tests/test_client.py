"""Tests for the Python client SDK and CLI."""

import json

import httpx
import pytest
from click.testing import CliRunner

from search_gateway_client import (
    AsyncSearchGatewayClient,
    QuotaExceededError,
    RateLimitedError,
    SearchGatewayAPIError,
    SearchGatewayClient,
)
from search_gateway_client import cli as cli_module


SEARCH_BODY = {
    "results": [
        {"id": "d2", "content": "test results and test coverage", "score": 0.92, "source_type": "doc"},
    ],
    "cache_hit": False,
    "cache_layer": "none",
    "latency": 12.5,
    "quota": {"used": 1, "limit": 100, "remaining": 99},
    "search_id": "s_1",
}

QUOTA_BODY = {
    "org_id": "org_1",
    "plan_tier": "free",
    "resources": {
        "search": {
            "org_id": "org_1",
            "resource": "search",
            "plan_tier": "free",
            "used": 100,
            "limit": 100,
            "remaining": 0,
            "reset_at": "2025-02-01T00:00:00+00:00",
        }
    },
}

RATE_LIMITED_BODY = {
    "error": "Rate limit exceeded",
    "code": "rate_limited",
    "details": {"retry_after": 7, "limit": 100},
}

QUOTA_EXCEEDED_BODY = {
    "error": "Search quota exceeded",
    "code": "quota_exceeded",
    "details": {"resource": "search", "used": 100, "limit": 100},
}


def _client(handler, **kwargs) -> SearchGatewayClient:
    return SearchGatewayClient(
        base_url="http://gateway",
        user_id="u_1",
        org_id="org_1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSearchGatewayClient:
    """Tests for the sync client."""

    def test_sends_identity_headers(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=SEARCH_BODY)

        with _client(handler, api_key="secret") as client:
            client.search("test", mode="hybrid", filters={"tags": ["a"]})

        assert seen["headers"]["x-user-id"] == "u_1"
        assert seen["headers"]["x-org-id"] == "org_1"
        assert seen["headers"]["authorization"] == "Bearer secret"
        assert seen["body"]["mode"] == "hybrid"
        assert seen["body"]["filters"] == {"tags": ["a"]}

    def test_search_parses_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=SEARCH_BODY, headers={"X-RateLimit-Remaining": "42"})

        with _client(handler) as client:
            response = client.search("test")

        assert response.results[0].id == "d2"
        assert response.results[0].source_type == "doc"
        assert response.cache_hit is False
        assert response.latency_ms == 12.5
        assert response.quota_remaining == 99
        assert response.search_id == "s_1"
        assert response.rate_limit_remaining == 42

    def test_rate_limited(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json=RATE_LIMITED_BODY, headers={"Retry-After": "7"})

        with _client(handler) as client:
            with pytest.raises(RateLimitedError) as exc_info:
                client.search("test")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0

    def test_retry_after_falls_back_to_details(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json=RATE_LIMITED_BODY)

        with _client(handler) as client:
            with pytest.raises(RateLimitedError) as exc_info:
                client.search("test")

        assert exc_info.value.retry_after == 7.0

    def test_retries_after_rate_limit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sleeps = []
        monkeypatch.setattr("search_gateway_client.client.time.sleep", sleeps.append)
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(429, json=RATE_LIMITED_BODY, headers={"Retry-After": "2"})
            return httpx.Response(200, json=SEARCH_BODY)

        with _client(handler, max_retries=1) as client:
            response = client.search("test")

        assert response.search_id == "s_1"
        assert sleeps == [2.0]
        assert calls["n"] == 2

    def test_no_retry_beyond_max_backoff(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sleeps = []
        monkeypatch.setattr("search_gateway_client.client.time.sleep", sleeps.append)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json=RATE_LIMITED_BODY, headers={"Retry-After": "120"})

        with _client(handler, max_retries=3, max_backoff=60.0) as client:
            with pytest.raises(RateLimitedError):
                client.search("test")

        assert sleeps == []

    def test_quota_exceeded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json=QUOTA_EXCEEDED_BODY)

        with _client(handler) as client:
            with pytest.raises(QuotaExceededError) as exc_info:
                client.search("test")

        assert exc_info.value.used == 100
        assert exc_info.value.limit == 100

    def test_other_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401, json={"error": "Missing X-Org-Id header", "code": "unauthorized", "details": {}}
            )

        with _client(handler) as client:
            with pytest.raises(SearchGatewayAPIError) as exc_info:
                client.search("test")

        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "unauthorized"

    def test_get_quota(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/quota"
            return httpx.Response(200, json=QUOTA_BODY)

        with _client(handler) as client:
            usage = client.get_quota()

        assert usage["search"].remaining == 0
        assert usage["search"].plan_tier == "free"
        assert usage["search"].reset_at.startswith("2025-02-01")

    def test_get_metrics(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["days"] == "30"
            return httpx.Response(
                200,
                json={
                    "total_searches": 10,
                    "cache_hit_rate": 0.4,
                    "top_queries": [{"query": "test", "count": 6}],
                },
            )

        with _client(handler) as client:
            metrics = client.get_metrics(days=30)

        assert metrics.total_searches == 10
        assert metrics.top_queries[0]["query"] == "test"

    def test_feedback_and_cache(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/search/feedback":
                return httpx.Response(201, json={"feedback_id": "f_1"})
            if request.method == "DELETE":
                return httpx.Response(200, json={"org_id": "org_1", "cleared": 3})
            return httpx.Response(200, json={"source_hits": 1})

        with _client(handler) as client:
            assert client.send_feedback("s_1", "d2", "relevant", rating=5) == "f_1"
            assert client.clear_cache() == 3
            assert client.cache_stats()["source_hits"] == 1

    def test_is_healthy(self) -> None:
        def down(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        def up(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "healthy"})

        assert _client(down).is_healthy() is False
        assert _client(up).is_healthy() is True

    def test_env_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SEARCH_GATEWAY_ORG_ID", "org_env")

        client = SearchGatewayClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        assert client.org_id == "org_env"
        client.close()


class TestAsyncSearchGatewayClient:
    """Tests for the async client."""

    @pytest.mark.asyncio
    async def test_search(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=SEARCH_BODY)

        async with AsyncSearchGatewayClient(
            base_url="http://gateway",
            user_id="u_1",
            org_id="org_1",
            transport=httpx.MockTransport(handler),
        ) as client:
            response = await client.search("test")

        assert response.quota_used == 1

    @pytest.mark.asyncio
    async def test_quota_exceeded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json=QUOTA_EXCEEDED_BODY)

        async with AsyncSearchGatewayClient(
            base_url="http://gateway",
            transport=httpx.MockTransport(handler),
        ) as client:
            with pytest.raises(QuotaExceededError):
                await client.search("test")


class TestCli:
    """Tests for the command-line interface."""

    @pytest.fixture
    def use_handler(self, monkeypatch: pytest.MonkeyPatch):
        def install(handler):
            monkeypatch.setattr(
                cli_module,
                "get_client",
                lambda obj: SearchGatewayClient(
                    base_url=obj["url"],
                    user_id=obj["user_id"],
                    org_id=obj["org_id"],
                    transport=httpx.MockTransport(handler),
                ),
            )
        return install

    def test_health(self, use_handler) -> None:
        use_handler(lambda r: httpx.Response(
            200, json={"status": "healthy", "components": {"cache": {"backend": "redis"}}}
        ))

        result = CliRunner().invoke(cli_module.cli, ["health"], obj={})

        assert result.exit_code == 0
        assert "API is healthy" in result.output
        assert "cache: redis" in result.output

    def test_search_json(self, use_handler) -> None:
        use_handler(lambda r: httpx.Response(200, json=SEARCH_BODY))

        result = CliRunner().invoke(
            cli_module.cli, ["--user", "u_1", "--org", "org_1", "search", "test", "--json"], obj={}
        )

        assert result.exit_code == 0
        assert '"quota_remaining": 99' in result.output

    def test_search_quota_exceeded(self, use_handler) -> None:
        use_handler(lambda r: httpx.Response(402, json=QUOTA_EXCEEDED_BODY))

        result = CliRunner().invoke(cli_module.cli, ["search", "test"], obj={})

        assert result.exit_code == 1
        assert "Quota exceeded (100/100)" in result.output

    def test_quota_json(self, use_handler) -> None:
        use_handler(lambda r: httpx.Response(200, json=QUOTA_BODY))

        result = CliRunner().invoke(cli_module.cli, ["quota", "--json"], obj={})

        assert result.exit_code == 0
        assert json.loads(result.output)["search"]["remaining"] == 0
