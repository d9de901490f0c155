"""Redis cache tier shared by every gateway instance."""

import json
import logging
import time
from typing import Any, Awaitable

import redis.asyncio as redis

from search_gateway.cache.base import CacheBackend
from search_gateway.errors import CacheUnavailable

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 500


class RedisCache(CacheBackend):
    """
    Search results cached in Redis under ``{prefix}{key}``.

    Each value is written as one JSON document ``{"v": value, "stored_at": epoch}``
    with the TTL set in the same command. Any Redis failure surfaces as
    ``CacheUnavailable``; a payload that does not decode reads as a miss.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        default_ttl_seconds: int = 300,
        prefix: str = "search_gateway:",
        max_connections: int = 10,
        socket_timeout: float = 2.0,
        client: Any = None,
    ) -> None:
        """
        Args:
            url: Redis connection URL
            default_ttl_seconds: TTL used when ``set`` gets none; 0 stores without expiry
            prefix: Namespace prepended to every key
            max_connections: Connection pool size
            socket_timeout: Connect and command timeout in seconds
            client: Already built ``redis.asyncio`` client; skips ``connect``
        """
        self._url = url
        self._default_ttl = default_ttl_seconds
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._client: Any = client
        self._connected = client is not None

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _key(self, key: str) -> str:
        return self._prefix + key

    async def connect(self) -> bool:
        """Open the connection pool and ping the server; False when unreachable."""
        if self._connected:
            return True

        try:
            client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
            await client.ping()
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {self._url}: {e}")
            return False

        self._client = client
        self._connected = True
        logger.info(f"Connected to Redis at {self._url}")
        return True

    async def _run(self, operation: str, command: Awaitable[Any]) -> Any:
        try:
            return await command
        except Exception as e:
            raise CacheUnavailable(f"Redis {operation} failed: {e}") from e

    async def _require_client(self) -> Any:
        if not self._connected and not await self.connect():
            raise CacheUnavailable("Redis is not reachable")
        return self._client

    async def get(self, key: str) -> Any | None:
        client = await self._require_client()
        raw = await self._run("GET", client.get(self._key(key)))
        if raw is None:
            return None

        try:
            document = json.loads(raw)
            return document["v"]
        except (ValueError, TypeError, KeyError):
            logger.warning(f"Discarding undecodable cache payload under {key}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        client = await self._require_client()
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        payload = json.dumps({"v": value, "stored_at": time.time()})

        await self._run("SET", client.set(self._key(key), payload, ex=ttl if ttl > 0 else None))
        return True

    async def delete(self, key: str) -> bool:
        client = await self._require_client()
        removed = await self._run("DEL", client.delete(self._key(key)))
        return removed > 0

    async def clear(self, pattern: str | None = None) -> int:
        """Delete matching keys, walking the keyspace with SCAN."""
        client = await self._require_client()
        match = self._key(pattern or "*")

        async def scan_and_delete() -> int:
            removed = 0
            batch: list[Any] = []
            async for key in client.scan_iter(match=match, count=DELETE_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= DELETE_BATCH_SIZE:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
            return removed

        return await self._run(f"CLEAR {match}", scan_and_delete())

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            self._client = None
            self._connected = False

    async def health_check(self) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            client = await self._require_client()
            await self._run("PING", client.ping())
            keys = await self._run("DBSIZE", client.dbsize())
        except CacheUnavailable as e:
            return {"backend": self.name, "connected": False, "error": str(e)}

        return {
            "backend": self.name,
            "connected": True,
            "ping_ms": round((time.perf_counter() - started) * 1000, 2),
            "total_keys": keys,
        }
