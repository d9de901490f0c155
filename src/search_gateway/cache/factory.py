"""Build cache tiers from configuration."""

import logging

from search_gateway.cache.base import CacheBackend
from search_gateway.cache.memory import InMemoryCache
from search_gateway.cache.multi_layer import MultiLayerCache
from search_gateway.cache.redis import RedisCache
from search_gateway.config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_cache(backend: str | None = None, config: Settings | None = None) -> CacheBackend:
    """
    Create the shared cache tier.

    Args:
        backend: "memory" or "redis" (defaults to ``config.cache_backend``)
        config: Settings to read from

    Raises:
        ValueError: If the backend name is unknown
    """
    config = config or get_settings()
    backend = backend or config.cache_backend

    if backend == "memory":
        return InMemoryCache(default_ttl_seconds=config.cache_ttl_seconds)

    if backend == "redis":
        if not config.redis_url:
            logger.warning("cache_backend is redis but REDIS_URL is unset; using in-memory shared tier")
            return InMemoryCache(default_ttl_seconds=config.cache_ttl_seconds)
        return RedisCache(
            url=config.redis_url,
            default_ttl_seconds=config.cache_ttl_seconds,
            prefix=f"{config.redis_prefix}cache:",
        )

    raise ValueError(f"Unknown cache backend: {backend}")


async def initialize_search_cache(config: Settings | None = None) -> MultiLayerCache:
    """
    Build the layered search cache at startup.

    A Redis tier that cannot be reached is dropped and the gateway runs on
    the memory tier alone.
    """
    config = config or get_settings()
    shared: CacheBackend | None = create_cache(config=config)

    if isinstance(shared, RedisCache) and not await shared.connect():
        logger.warning("Redis unreachable, running with memory tier only")
        shared = None

    cache = MultiLayerCache(
        memory=InMemoryCache(
            default_ttl_seconds=config.memory_cache_ttl_seconds,
            max_size=config.memory_cache_max_size,
        ),
        shared=shared,
        default_ttl_seconds=config.cache_ttl_seconds,
        memory_ttl_seconds=config.memory_cache_ttl_seconds,
    )
    logger.info(f"Search cache ready (shared tier: {shared.name if shared else 'none'})")
    return cache
