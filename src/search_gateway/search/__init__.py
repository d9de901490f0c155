"""
Search module: request models, cache keys, engines and the request pipeline.
"""

from search_gateway.search.engine import (
    Document,
    HttpSearchEngine,
    InMemorySearchEngine,
    SearchEngine,
    create_search_engine,
)
from search_gateway.search.fingerprint import normalize_query, org_key_pattern, search_fingerprint
from search_gateway.search.models import (
    SearchFilters,
    SearchMode,
    SearchRequest,
    SearchResponse,
    SearchResult,
    parse_search_request,
)
from search_gateway.search.orchestrator import (
    SearchOrchestrator,
    SearchOutcome,
    SearchServices,
    SearchState,
)

__all__ = [
    "Document",
    "HttpSearchEngine",
    "InMemorySearchEngine",
    "SearchEngine",
    "SearchFilters",
    "SearchMode",
    "SearchOrchestrator",
    "SearchOutcome",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
    "SearchServices",
    "SearchState",
    "create_search_engine",
    "normalize_query",
    "org_key_pattern",
    "parse_search_request",
    "search_fingerprint",
]
