"""
Cache backend protocol and registry.

Cache backends store opaque strings under ``(kind, natural_id)`` keys with a
time-to-live. Serialization of records, and the explicit "not present"
marker, live in :mod:`trainee_sync.core.cache.readthrough`; backends only
move strings.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from trainee_sync.core.config.models import CacheConfig

T = TypeVar("T", bound=Callable[..., Any])


class CacheError(Exception):
    """The cache backend could not be reached or rejected the operation."""


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol for string key/value caches with per-entry expiry."""

    def get(self, key: str) -> str | None:
        """Return the cached value, or None on a miss."""
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value that expires after ``ttl_seconds``."""
        ...

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store a value only if the key is absent. Returns True if stored."""
        ...

    def invalidate(self, key: str) -> None:
        """Remove a key. Removing an absent key is not an error."""
        ...


_caches: dict[str, Callable[["CacheConfig"], CacheBackend]] = {}


def register_cache(name: str) -> Callable[[T], T]:
    """Decorator to register a cache backend under ``name``."""

    def decorator(factory: T) -> T:
        _caches[name] = getattr(factory, "from_config", factory)
        return factory

    return decorator


def get_cache(config: CacheConfig) -> CacheBackend:
    """
    Build the cache named by ``config.backend``.

    Raises:
        ValueError: If the backend is not registered
    """
    factory = _caches.get(config.backend)
    if factory is None:
        raise ValueError(
            f"Cache '{config.backend}' not registered. "
            f"Available caches: {', '.join(sorted(_caches))}"
        )
    return factory(config)
