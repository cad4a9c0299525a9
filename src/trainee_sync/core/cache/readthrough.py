"""
Read-through record cache with write invalidation.

Readers go through :meth:`ReadThroughCache.get`: a hit is served from the
cache backend, a miss reads the store and fills the cache with either the
serialized record or an explicit not-present marker. Writers (the sync
engine) update the store first and then call :meth:`invalidate`.

A fill that raced with a write must not leave the pre-write value behind.
While fills are in flight for a key it carries a generation number, bumped
by every invalidation; a fill only writes back when the generation it saw
before reading the store is still current. The entry is dropped when the
last fill for the key finishes, so keys that are only written are never
tracked.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from trainee_sync.core.entities.models import EntityKey, Record
from trainee_sync.core.store.backend import StoreBackend

from .backend import CacheBackend, CacheError

logger = logging.getLogger(__name__)

NOT_PRESENT = "__not_present__"


@dataclass
class _FillState:
    generation: int = 0
    fills: int = 0


class ReadThroughCache:
    """
    Record cache keyed by ``(kind, natural_id)``.

    Args:
        backend: String cache holding serialized records
        store: Source of truth consulted on a miss
        ttl_seconds: Lifetime of filled entries
        prefix: Namespace for cache keys
    """

    def __init__(
        self,
        backend: CacheBackend,
        store: StoreBackend,
        *,
        ttl_seconds: int = 3600,
        prefix: str = "trainee-sync",
    ) -> None:
        self.backend = backend
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._fills: dict[EntityKey, _FillState] = {}
        self._lock = threading.Lock()

    def cache_key(self, key: EntityKey) -> str:
        return f"{self.prefix}:{key.kind.value}:{key.natural_id}"

    @property
    def pending_fills(self) -> int:
        """Keys with a store read in flight."""
        with self._lock:
            return len(self._fills)

    def get(self, key: EntityKey) -> Record | None:
        """
        Return the current record for ``key``, or None if it is not stored.

        Cache failures degrade to a direct store read.
        """
        cache_key = self.cache_key(key)
        try:
            cached = self.backend.get(cache_key)
        except CacheError as e:
            logger.warning("Cache read failed for %s, reading store: %s", key, e)
            return self._read_store(key)

        if cached is not None:
            if cached == NOT_PRESENT:
                return None
            return Record.model_validate_json(cached)

        with self._lock:
            state = self._fills.setdefault(key, _FillState())
            state.fills += 1
            generation = state.generation

        try:
            record = self._read_store(key)
            value = record.model_dump_json() if record is not None else NOT_PRESENT
            with self._lock:
                if state.generation != generation:
                    logger.debug("Skipping cache fill for %s: invalidated during read", key)
                    return record
                try:
                    self.backend.set(cache_key, value, self.ttl_seconds)
                except CacheError as e:
                    logger.warning("Cache fill failed for %s: %s", key, e)
            return record
        finally:
            with self._lock:
                state.fills -= 1
                if state.fills == 0:
                    del self._fills[key]

    def invalidate(self, key: EntityKey) -> None:
        """
        Drop the cached entry for ``key``.

        Raises:
            CacheError: If the backend delete failed. In-flight fills are
                still fenced off by the generation bump.
        """
        with self._lock:
            state = self._fills.get(key)
            if state is not None:
                state.generation += 1
        self.backend.invalidate(self.cache_key(key))

    def _read_store(self, key: EntityKey) -> Record | None:
        stored = self.store.get(key)
        return stored.record if stored is not None else None
