"""Deterministic cache keys for search requests."""

import hashlib
import json
from typing import Any

from search_gateway.search.models import SearchRequest

KEY_PREFIX = "search"


def normalize_query(query: str) -> str:
    """Lower-case and collapse whitespace so trivially different queries share a key."""
    return " ".join(query.lower().split())


def _canonical_filters(request: SearchRequest) -> dict[str, Any]:
    filters = request.filters.model_dump(mode="json", exclude_none=True)
    for name, value in filters.items():
        if isinstance(value, list):
            filters[name] = sorted(value)
    return filters


def search_fingerprint(org_id: str, request: SearchRequest) -> str:
    """
    Build the cache key for a request.

    Every input that changes the result set is hashed, and the org id is
    both hashed and used as a key segment, so tenants never share entries.

    Returns:
        Key of the form ``search:{org_id}:{sha256 hex}``
    """
    payload = {
        "org_id": org_id,
        "query": normalize_query(request.query),
        "mode": request.mode.value,
        "limit": request.limit,
        "threshold": request.threshold,
        "filters": _canonical_filters(request),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:{org_id}:{digest}"


def org_key_pattern(org_id: str) -> str:
    """Glob matching every cached search of one organization."""
    return f"{KEY_PREFIX}:{org_id}:*"
