"""Tests for search engine collaborators."""

from datetime import datetime, timezone

import httpx
import pytest

from search_gateway.http.client import HttpClient, UpstreamRateLimitError
from search_gateway.search.engine import (
    Document,
    HttpSearchEngine,
    InMemorySearchEngine,
    create_search_engine,
)
from search_gateway.search.models import SearchRequest


class TestInMemorySearchEngine:
    """Tests for the term-matching engine."""

    @pytest.mark.asyncio
    async def test_scoped_to_org(self, engine: InMemorySearchEngine) -> None:
        results = await engine.compute(SearchRequest(query="test", threshold=0.1), "org_1")

        assert {r.id for r in results} == {"d1", "d2"}

    @pytest.mark.asyncio
    async def test_sorted_by_score(self, engine: InMemorySearchEngine) -> None:
        results = await engine.compute(SearchRequest(query="test", threshold=0.0), "org_1")

        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert results[0].id == "d2"

    @pytest.mark.asyncio
    async def test_threshold_and_limit(self, engine: InMemorySearchEngine) -> None:
        results = await engine.compute(
            SearchRequest(query="test", mode="keyword", threshold=0.5, limit=1), "org_1"
        )

        assert len(results) == 1
        assert results[0].score == 1.0

    @pytest.mark.asyncio
    async def test_filters(self, engine: InMemorySearchEngine) -> None:
        request = SearchRequest(
            query="test", threshold=0.0, filters={"source_types": ["meeting"]}
        )

        results = await engine.compute(request, "org_1")

        assert [r.id for r in results] == ["d1"]

    @pytest.mark.asyncio
    async def test_date_filter(self) -> None:
        engine = InMemorySearchEngine()
        engine.add_document(
            "org_1",
            Document(id="old", content="test", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
        )
        engine.add_document("org_1", Document(id="new", content="test"))

        results = await engine.compute(
            SearchRequest(query="test", filters={"date_from": "2025-01-01T00:00:00"}), "org_1"
        )

        assert [r.id for r in results] == ["new"]

    @pytest.mark.asyncio
    async def test_unknown_org(self, engine: InMemorySearchEngine) -> None:
        assert await engine.compute(SearchRequest(query="test"), "org_9") == []

    def test_document_count(self, engine: InMemorySearchEngine) -> None:
        assert engine.document_count("org_1") == 3
        assert engine.document_count("org_9") == 0


class TestHttpSearchEngine:
    """Tests for the remote engine over a mocked transport."""

    @pytest.mark.asyncio
    async def test_posts_request_with_org(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = request.read()
            return httpx.Response(
                200,
                json={"results": [{"id": "r1", "content": "hit", "score": 0.9}]},
            )

        client = HttpClient(base_url="http://engine", transport=httpx.MockTransport(handler))
        engine = HttpSearchEngine("http://engine", client=client)

        results = await engine.compute(SearchRequest(query="test"), "org_1")
        await engine.close()

        assert seen["path"] == "/search"
        assert b'"org_id":"org_1"' in seen["body"].replace(b" ", b"")
        assert results[0].id == "r1"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"results": []})

        client = HttpClient(
            base_url="http://engine",
            backoff_factor=0.0,
            transport=httpx.MockTransport(handler),
        )
        engine = HttpSearchEngine("http://engine", client=client)

        assert await engine.compute(SearchRequest(query="test"), "org_1") == []
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_upstream_rate_limit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "30"})

        client = HttpClient(
            base_url="http://engine",
            max_retry_after=1.0,
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(UpstreamRateLimitError) as exc_info:
            await client.post_json("/search", {})
        assert exc_info.value.retry_after == 30.0


class TestCreateSearchEngine:
    def test_memory_without_url(self) -> None:
        assert isinstance(create_search_engine(None), InMemorySearchEngine)

    def test_http_with_url(self) -> None:
        assert isinstance(create_search_engine("http://engine:9000"), HttpSearchEngine)
