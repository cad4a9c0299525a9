"""
Record cache adapters.

Example:
    >>> from trainee_sync.core.cache import ReadThroughCache, get_cache
    >>> cache = ReadThroughCache(get_cache(config.cache), store)
"""

from trainee_sync.core.cache.backend import (
    CacheBackend,
    CacheError,
    get_cache,
    register_cache,
)
from trainee_sync.core.cache.memory import InMemoryCache
from trainee_sync.core.cache.readthrough import NOT_PRESENT, ReadThroughCache
from trainee_sync.core.cache.redis_cache import RedisCache

__all__ = [
    "CacheBackend",
    "CacheError",
    "InMemoryCache",
    "NOT_PRESENT",
    "ReadThroughCache",
    "RedisCache",
    "get_cache",
    "register_cache",
]
