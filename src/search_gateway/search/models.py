"""Request and response models for the search pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from search_gateway.errors import ValidationError

MAX_QUERY_LENGTH = 500


class SearchMode(str, Enum):
    """How the engine should rank results."""

    SEMANTIC = "semantic"
    HYBRID = "hybrid"
    KEYWORD = "keyword"


class SearchFilters(BaseModel):
    """Optional narrowing of the searched content."""

    model_config = ConfigDict(extra="forbid")

    recording_ids: list[str] | None = None
    source_types: list[str] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    tags: list[str] | None = None

    @model_validator(mode="after")
    def check_date_range(self) -> "SearchFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class SearchRequest(BaseModel):
    """Search request body."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., min_length=1, max_length=MAX_QUERY_LENGTH)
    limit: int = Field(default=20, ge=1, le=100, description="Maximum results to return")
    threshold: float = Field(default=0.5, ge=0, le=1, description="Minimum relevance score")
    mode: SearchMode = Field(default=SearchMode.SEMANTIC)
    filters: SearchFilters = Field(default_factory=SearchFilters)

    @field_validator("query", mode="before")
    @classmethod
    def strip_query(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value


class SearchResult(BaseModel):
    """One ranked hit."""

    id: str
    content: str
    score: float
    recording_id: str | None = None
    source_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class QuotaSnapshot(BaseModel):
    """Quota state after the request was billed."""

    used: int
    limit: int
    remaining: int


class SearchResponse(BaseModel):
    """Search response body."""

    results: list[SearchResult]
    cache_hit: bool
    cache_layer: str
    latency: float = Field(..., description="Pipeline latency in milliseconds")
    quota: QuotaSnapshot
    search_id: str | None = None


class FeedbackRequest(BaseModel):
    """Feedback on one result of a previous search."""

    model_config = ConfigDict(extra="forbid")

    search_id: str = Field(..., min_length=1)
    result_id: str = Field(..., min_length=1)
    feedback_type: str = Field(..., pattern="^(relevant|irrelevant|clicked)$")
    rating: int | None = Field(default=None, ge=1, le=5)


def _error_details(exc: PydanticValidationError) -> dict[str, Any]:
    return {
        "errors": [
            {
                "field": ".".join(str(part) for part in error["loc"]) or "body",
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
    }


def parse_search_request(payload: Any) -> SearchRequest:
    """
    Validate a raw request body.

    Raises:
        ValidationError: With per-field messages in ``details["errors"]``
    """
    if isinstance(payload, SearchRequest):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return SearchRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid search request", details=_error_details(e)) from e


def parse_feedback_request(payload: Any) -> FeedbackRequest:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return FeedbackRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid feedback request", details=_error_details(e)) from e
