"""API package for the search gateway."""

from search_gateway.api.app import create_app
from search_gateway.api.routes import router

__all__ = ["create_app", "router"]
