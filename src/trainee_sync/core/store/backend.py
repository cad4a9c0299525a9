"""
Store backend protocol and registry.

This module defines the StoreBackend protocol that all record stores must
implement, enabling pluggable persistence (in-memory, SQLite, ...).

Every stored document carries the full record plus ``applied_at``, the
version of the notification that last wrote it. Writes older than that
version are reported as :attr:`WriteOutcome.CONFLICT`: a stale redelivery
the engine acknowledges without changing anything.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, Field

from trainee_sync.core.entities.models import EntityKey, EntityKind, Record

if TYPE_CHECKING:
    from trainee_sync.core.config.models import StoreConfig

T = TypeVar("T", bound=Callable[..., Any])


class StoreError(Exception):
    """A store operation failed in a way retrying will not fix."""


class StoreUnavailableError(StoreError):
    """The store is unreachable or busy; the operation may succeed if retried."""


class WriteOutcome(str, Enum):
    """Result of an upsert or delete."""

    APPLIED = "applied"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class StoredRecord(BaseModel):
    """A record as persisted, with the version that last wrote it."""

    record: Record
    applied_at: datetime = Field(description="Version of the last applied notification")

    @property
    def key(self) -> EntityKey:
        return self.record.key


def is_stale(stored: StoredRecord | None, version: datetime) -> bool:
    """True when the stored document is strictly newer than ``version``."""
    return stored is not None and stored.applied_at > version


@runtime_checkable
class StoreBackend(Protocol):
    """
    Protocol for record store implementations.

    Implementations must be safe to call from several worker threads.
    Per-key serialization is enforced by the engine, not the store.
    """

    def get(self, key: EntityKey) -> StoredRecord | None:
        """
        Look up one record.

        Returns:
            The stored record, or None when the key is not present
        """
        ...

    def exists(self, key: EntityKey) -> bool:
        """Check presence without loading the payload."""
        ...

    def upsert(self, key: EntityKey, record: Record, version: datetime) -> WriteOutcome:
        """
        Insert or replace a record.

        Writing the same record and version twice leaves the same state
        and returns APPLIED both times.

        Returns:
            APPLIED, or CONFLICT when the stored version is newer

        Raises:
            StoreUnavailableError: On transient I/O failure
            StoreError: On any other failure
        """
        ...

    def delete(self, key: EntityKey, version: datetime) -> WriteOutcome:
        """
        Remove a record.

        Returns:
            APPLIED, NOT_FOUND when absent, or CONFLICT when the stored
            version is newer than the delete

        Raises:
            StoreUnavailableError: On transient I/O failure
            StoreError: On any other failure
        """
        ...

    def count(self, kind: EntityKind | None = None) -> int:
        """Number of stored records, optionally for one kind."""
        ...

    def close(self) -> None:
        """Release any underlying connection."""
        ...


# Backend registry
_stores: dict[str, Callable[["StoreConfig"], StoreBackend]] = {}


def register_store(name: str) -> Callable[[T], T]:
    """
    Decorator to register a store factory.

    Usage:
        @register_store("memory")
        class InMemoryStore:
            @classmethod
            def from_config(cls, config): ...

    The decorated object is called with the StoreConfig; classes are
    registered through their ``from_config`` classmethod when present.
    """

    def decorator(factory: T) -> T:
        _stores[name] = getattr(factory, "from_config", factory)
        return factory

    return decorator


def get_store(config: StoreConfig) -> StoreBackend:
    """
    Build the store named by ``config.backend``.

    Raises:
        ValueError: If the backend is not registered
    """
    factory = _stores.get(config.backend)
    if factory is None:
        raise ValueError(
            f"Store '{config.backend}' not registered. "
            f"Available stores: {', '.join(sorted(_stores))}"
        )
    return factory(config)


def list_stores() -> list[str]:
    """List all registered store names."""
    return sorted(_stores)
