"""HTTP utilities for calling collaborator services."""

from search_gateway.http.client import HttpClient, UpstreamRateLimitError

__all__ = ["HttpClient", "UpstreamRateLimitError"]
