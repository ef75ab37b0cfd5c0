"""
Query Cache (Redis)

Read-through cache for query results. Entries expire by TTL only; writes
never invalidate them, so a read right after a write can be stale until
the entry expires.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

import redis.asyncio as redis
import structlog

from ckg.config import Settings
from ckg.exceptions import CacheError


logger = structlog.get_logger(__name__)


def cache_key(
    prefix: str,
    query_type: str,
    parameters: dict[str, Any],
    required_properties: list[str] | None,
) -> str:
    """
    Build the key for one query.

    Args:
        prefix: Key namespace
        query_type: Query variant name
        parameters: Parameters in wire form
        required_properties: Projected properties, if any

    Returns:
        ``<prefix><queryType>:<sha256 of canonical JSON>``
    """
    canonical = json.dumps(
        {"parameters": parameters, "requiredProperties": required_properties},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{prefix}{query_type}:{digest}"


class QueryCache:
    """
    Redis-backed JSON cache.

    The client can be injected (a mock in tests); otherwise a pooled
    client is built from the settings on ``connect()``.
    """

    def __init__(self, settings: Settings, client: redis.Redis | None = None) -> None:
        self.redis_url = settings.redis_url
        self.prefix = settings.cache_key_prefix
        self.default_ttl_seconds = settings.cache_default_ttl_seconds
        self.pool: redis.ConnectionPool | None = None
        self.client: redis.Redis | None = client

    async def connect(self) -> None:
        """
        Establish the Redis connection pool.

        Raises:
            CacheError: If Redis is unreachable
        """
        try:
            if self.client is None:
                self.pool = redis.ConnectionPool.from_url(
                    self.redis_url,
                    decode_responses=True,
                    max_connections=10,
                )
                self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()
            logger.info("redis.connected", url=self.redis_url)
        except redis.RedisError as e:
            logger.error("redis.connection_failed", url=self.redis_url, error=str(e))
            raise CacheError(f"Failed to connect to Redis: {e}") from e

    async def disconnect(self) -> None:
        if self.client:
            await self.client.aclose()
            logger.info("redis.disconnected")

    async def ping(self) -> bool:
        if not self.client:
            return False
        try:
            return bool(await self.client.ping())
        except redis.RedisError:
            return False

    def key_for(
        self,
        query_type: str,
        parameters: dict[str, Any],
        required_properties: list[str] | None,
    ) -> str:
        return cache_key(self.prefix, query_type, parameters, required_properties)

    async def get_json(self, key: str) -> Any | None:
        """
        Get a cached JSON value.

        Returns:
            Decoded value, or None on a miss

        Raises:
            CacheError: If the lookup fails or the entry is not JSON
        """
        if not self.client:
            raise CacheError("Redis client not connected")

        try:
            value = await self.client.get(key)
        except redis.RedisError as e:
            logger.error("cache.get_failed", key=key, error=str(e))
            raise CacheError(f"Failed to get cache key: {e}") from e

        logger.debug("cache.get", key=key, found=value is not None)
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError as e:
            raise CacheError(f"Corrupt cache entry {key}: {e}") from e

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """
        Store a JSON value with a TTL (the default TTL when not given).

        Raises:
            CacheError: If the value cannot be encoded or stored
        """
        if not self.client:
            raise CacheError("Redis client not connected")

        ttl = ttl_seconds or self.default_ttl_seconds
        try:
            await self.client.setex(key, ttl, json.dumps(value))
        except (TypeError, ValueError) as e:
            raise CacheError(f"Unserialisable cache value for {key}: {e}") from e
        except redis.RedisError as e:
            logger.error("cache.set_failed", key=key, error=str(e))
            raise CacheError(f"Failed to set cache key: {e}") from e
        logger.debug("cache.set", key=key, ttl_seconds=ttl)

    async def delete(self, key: str) -> bool:
        """
        Delete a key.

        Returns:
            True if the key existed

        Raises:
            CacheError: If the operation fails
        """
        if not self.client:
            raise CacheError("Redis client not connected")

        try:
            deleted = await self.client.delete(key)
        except redis.RedisError as e:
            logger.error("cache.delete_failed", key=key, error=str(e))
            raise CacheError(f"Failed to delete cache key: {e}") from e
        logger.debug("cache.delete", key=key, deleted=bool(deleted))
        return bool(deleted)
