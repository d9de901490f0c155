"""
Cache module for search results.

Provides pluggable cache tiers (in-memory and Redis) and the layered
get-or-compute cache that the search pipeline reads through.
"""

from search_gateway.cache.base import CacheBackend, CacheEntry
from search_gateway.cache.memory import InMemoryCache
from search_gateway.cache.redis import RedisCache
from search_gateway.cache.multi_layer import CacheStats, MultiLayerCache
from search_gateway.cache.factory import create_cache, initialize_search_cache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "InMemoryCache",
    "RedisCache",
    "CacheStats",
    "MultiLayerCache",
    "create_cache",
    "initialize_search_cache",
]
