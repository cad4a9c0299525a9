"""
Redis cache backend.

Mirrors the upstream deployment, where records and outstanding data
requests are cached in Redis with an expiry. All client errors are
surfaced as :class:`CacheError` so callers can treat the cache as
best-effort.
"""

from __future__ import annotations

import logging
from typing import Any

import redis

from trainee_sync.core.config.models import CacheConfig

from .backend import CacheError, register_cache

logger = logging.getLogger(__name__)


@register_cache("redis")
class RedisCache:
    """
    Cache backed by a Redis server.

    Args:
        client: A ``redis.Redis`` (or compatible) client created with
            ``decode_responses=True``

    Example:
        >>> cache = RedisCache.from_url("redis://localhost:6379/0")
        >>> cache.set("Post:42", "{...}", ttl_seconds=60)
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    @classmethod
    def from_config(cls, config: CacheConfig) -> RedisCache:
        return cls.from_url(config.url)

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except redis.RedisError as e:
            raise CacheError(f"Redis get failed for {key}: {e}") from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise CacheError(f"Redis set failed for {key}: {e}") from e

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(self._client.set(key, value, ex=ttl_seconds, nx=True))
        except redis.RedisError as e:
            raise CacheError(f"Redis set failed for {key}: {e}") from e

    def invalidate(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as e:
            raise CacheError(f"Redis delete failed for {key}: {e}") from e
        logger.debug("Invalidated redis key %s", key)
