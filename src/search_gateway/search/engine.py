"""
Search engine collaborators.

The gateway never ranks content itself in production; it calls a search
engine through the ``SearchEngine`` interface. ``HttpSearchEngine`` talks
to a remote ranking service. ``InMemorySearchEngine`` is a small
term-matching engine used for local development and tests.
"""

import logging
import math
import re
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from search_gateway.http.client import HttpClient
from search_gateway.search.models import SearchMode, SearchRequest, SearchResult

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


class SearchEngine(ABC):
    """Abstract base class for search engines."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Engine identifier used in logs and health output."""
        ...

    @abstractmethod
    async def compute(self, request: SearchRequest, org_id: str) -> list[SearchResult]:
        """
        Run a search scoped to one organization.

        Args:
            request: Validated search request
            org_id: Organization whose content may be searched

        Returns:
            Results ordered by descending score, at most ``request.limit``
        """
        ...

    async def close(self) -> None:
        return None


@dataclass
class Document:
    """Indexed content for the in-memory engine."""

    id: str
    content: str
    recording_id: str | None = None
    source_type: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemorySearchEngine(SearchEngine):
    """
    Term-matching engine over per-organization document lists.

    Scores:
        keyword: share of query terms present in the document
        semantic: cosine similarity of term-frequency vectors
        hybrid: mean of the two
    """

    def __init__(self) -> None:
        self._documents: dict[str, list[Document]] = defaultdict(list)

    @property
    def name(self) -> str:
        return "memory"

    def add_document(self, org_id: str, document: Document) -> None:
        self._documents[org_id].append(document)

    def document_count(self, org_id: str) -> int:
        return len(self._documents.get(org_id, []))

    async def compute(self, request: SearchRequest, org_id: str) -> list[SearchResult]:
        query_terms = tokenize(request.query)
        if not query_terms:
            return []

        results = []
        for doc in self._documents.get(org_id, []):
            if not self._matches_filters(doc, request):
                continue
            score = self._score(query_terms, tokenize(doc.content), request.mode)
            if score < request.threshold or score == 0:
                continue
            results.append(
                SearchResult(
                    id=doc.id,
                    content=doc.content,
                    score=round(score, 4),
                    recording_id=doc.recording_id,
                    source_type=doc.source_type,
                    metadata=dict(doc.metadata, tags=list(doc.tags)),
                )
            )

        results.sort(key=lambda r: (-r.score, r.id))
        return results[: request.limit]

    def _matches_filters(self, doc: Document, request: SearchRequest) -> bool:
        filters = request.filters
        if filters.recording_ids and doc.recording_id not in filters.recording_ids:
            return False
        if filters.source_types and doc.source_type not in filters.source_types:
            return False
        if filters.tags and not set(filters.tags) & set(doc.tags):
            return False
        if filters.date_from and doc.created_at < _as_aware(filters.date_from):
            return False
        if filters.date_to and doc.created_at > _as_aware(filters.date_to):
            return False
        return True

    def _score(self, query_terms: list[str], doc_terms: list[str], mode: SearchMode) -> float:
        if not doc_terms:
            return 0.0

        doc_set = set(doc_terms)
        unique_query = set(query_terms)
        keyword = len(unique_query & doc_set) / len(unique_query)
        if mode == SearchMode.KEYWORD:
            return keyword

        q_counts = Counter(query_terms)
        d_counts = Counter(doc_terms)
        dot = sum(q_counts[t] * d_counts[t] for t in q_counts)
        norm = math.sqrt(sum(v * v for v in q_counts.values())) * math.sqrt(
            sum(v * v for v in d_counts.values())
        )
        semantic = dot / norm if norm else 0.0
        if mode == SearchMode.SEMANTIC:
            return semantic

        return (keyword + semantic) / 2


def _as_aware(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class HttpSearchEngine(SearchEngine):
    """Remote ranking service reached over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: HttpClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or HttpClient(base_url=base_url, headers=headers)
        self._base_url = base_url

    @property
    def name(self) -> str:
        return "http"

    async def compute(self, request: SearchRequest, org_id: str) -> list[SearchResult]:
        payload = request.model_dump(mode="json")
        payload["org_id"] = org_id

        data = await self._client.post_json("/search", payload)
        raw_results = data.get("results", []) if isinstance(data, dict) else data
        results = [SearchResult.model_validate(item) for item in raw_results]
        logger.debug(f"Search engine returned {len(results)} results for {org_id}")
        return results[: request.limit]

    async def close(self) -> None:
        await self._client.close()


def create_search_engine(search_engine_url: str | None, api_key: str | None = None) -> SearchEngine:
    """Create the remote engine when a URL is configured, else the in-memory one."""
    if search_engine_url:
        logger.info(f"Using remote search engine at {search_engine_url}")
        return HttpSearchEngine(search_engine_url, api_key=api_key)
    logger.info("No search engine URL configured, using in-memory engine")
    return InMemorySearchEngine()
