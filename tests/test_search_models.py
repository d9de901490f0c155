"""Tests for request validation and cache keys."""

import pytest

from search_gateway.errors import ValidationError
from search_gateway.search.fingerprint import normalize_query, org_key_pattern, search_fingerprint
from search_gateway.search.models import (
    SearchMode,
    SearchRequest,
    parse_feedback_request,
    parse_search_request,
)


class TestParseSearchRequest:
    """Tests for search request validation."""

    def test_defaults(self) -> None:
        request = parse_search_request({"query": "  test  "})

        assert request.query == "test"
        assert request.limit == 20
        assert request.threshold == 0.5
        assert request.mode == SearchMode.SEMANTIC

    def test_full_request(self) -> None:
        request = parse_search_request({
            "query": "roadmap",
            "limit": 5,
            "threshold": 0.1,
            "mode": "hybrid",
            "filters": {"source_types": ["meeting"], "date_from": "2025-01-01T00:00:00Z"},
        })

        assert request.mode == SearchMode.HYBRID
        assert request.filters.source_types == ["meeting"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"query": ""},
            {"query": "   "},
            {"query": "x" * 501},
            {"query": "ok", "limit": 0},
            {"query": "ok", "limit": 101},
            {"query": "ok", "threshold": 1.5},
            {"query": "ok", "mode": "fuzzy"},
            {"query": "ok", "unexpected": True},
            {"query": "ok", "filters": {"date_from": "2025-02-01", "date_to": "2025-01-01"}},
            {},
        ],
    )
    def test_invalid(self, payload: dict) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_search_request(payload)

        assert exc_info.value.status_code == 400
        assert exc_info.value.details["errors"]

    def test_non_object_body(self) -> None:
        with pytest.raises(ValidationError, match="JSON object"):
            parse_search_request(["query"])

    def test_error_names_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_search_request({"query": "ok", "limit": 500})

        assert exc_info.value.details["errors"][0]["field"] == "limit"


class TestParseFeedbackRequest:
    def test_valid(self) -> None:
        feedback = parse_feedback_request(
            {"search_id": "s", "result_id": "r", "feedback_type": "clicked"}
        )
        assert feedback.rating is None

    def test_invalid_type(self) -> None:
        with pytest.raises(ValidationError):
            parse_feedback_request({"search_id": "s", "result_id": "r", "feedback_type": "meh"})


class TestFingerprint:
    """Tests for deterministic cache keys."""

    def test_normalize_query(self) -> None:
        assert normalize_query("  Hello\t  World ") == "hello world"

    def test_equivalent_requests_share_key(self) -> None:
        a = SearchRequest(query="Test  Query", filters={"tags": ["b", "a"]})
        b = SearchRequest(query="test query", filters={"tags": ["a", "b"]})

        assert search_fingerprint("org_1", a) == search_fingerprint("org_1", b)

    def test_orgs_never_share_key(self) -> None:
        request = SearchRequest(query="test")

        assert search_fingerprint("org_1", request) != search_fingerprint("org_2", request)

    @pytest.mark.parametrize(
        "other",
        [
            {"query": "test", "mode": "keyword"},
            {"query": "test", "limit": 5},
            {"query": "test", "threshold": 0.9},
            {"query": "test", "filters": {"source_types": ["doc"]}},
        ],
    )
    def test_result_affecting_inputs_change_key(self, other: dict) -> None:
        base = SearchRequest(query="test")

        assert search_fingerprint("org_1", base) != search_fingerprint("org_1", SearchRequest(**other))

    def test_key_format(self) -> None:
        key = search_fingerprint("org_1", SearchRequest(query="test"))

        assert key.startswith("search:org_1:")
        assert len(key.rsplit(":", 1)[1]) == 64

    def test_org_key_pattern(self) -> None:
        assert org_key_pattern("org_1") == "search:org_1:*"
