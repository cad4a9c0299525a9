"""In-process record store backed by a dict."""

from __future__ import annotations

import threading
from datetime import datetime

from trainee_sync.core.config.models import StoreConfig
from trainee_sync.core.entities.models import EntityKey, EntityKind, Record

from .backend import StoredRecord, WriteOutcome, is_stale, register_store


@register_store("memory")
class InMemoryStore:
    """
    Record store that keeps documents in memory.

    Used for tests and dry-run replays. Records are copied on the way in and
    out so callers never share mutable payloads with the store.

    Example:
        >>> store = InMemoryStore()
        >>> store.upsert(record.key, record, version)
        <WriteOutcome.APPLIED: 'applied'>
    """

    def __init__(self) -> None:
        self._documents: dict[EntityKey, StoredRecord] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: StoreConfig) -> InMemoryStore:
        return cls()

    def get(self, key: EntityKey) -> StoredRecord | None:
        with self._lock:
            stored = self._documents.get(key)
            return stored.model_copy(deep=True) if stored is not None else None

    def exists(self, key: EntityKey) -> bool:
        with self._lock:
            return key in self._documents

    def upsert(self, key: EntityKey, record: Record, version: datetime) -> WriteOutcome:
        with self._lock:
            if is_stale(self._documents.get(key), version):
                return WriteOutcome.CONFLICT
            self._documents[key] = StoredRecord(
                record=record.model_copy(deep=True), applied_at=version
            )
            return WriteOutcome.APPLIED

    def delete(self, key: EntityKey, version: datetime) -> WriteOutcome:
        with self._lock:
            stored = self._documents.get(key)
            if stored is None:
                return WriteOutcome.NOT_FOUND
            if is_stale(stored, version):
                return WriteOutcome.CONFLICT
            del self._documents[key]
            return WriteOutcome.APPLIED

    def count(self, kind: EntityKind | None = None) -> int:
        with self._lock:
            if kind is None:
                return len(self._documents)
            return sum(1 for key in self._documents if key.kind == kind)

    def close(self) -> None:
        pass
