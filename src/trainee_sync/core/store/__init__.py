"""
Record store adapters.

Example:
    >>> from trainee_sync.core.store import get_store
    >>> store = get_store(StoreConfig(backend="sqlite", path="records.db"))
"""

from trainee_sync.core.store.backend import (
    StoreBackend,
    StoredRecord,
    StoreError,
    StoreUnavailableError,
    WriteOutcome,
    get_store,
    list_stores,
    register_store,
)
from trainee_sync.core.store.memory import InMemoryStore
from trainee_sync.core.store.sqlite import SqliteStore

__all__ = [
    "InMemoryStore",
    "SqliteStore",
    "StoreBackend",
    "StoreError",
    "StoreUnavailableError",
    "StoredRecord",
    "WriteOutcome",
    "get_store",
    "list_stores",
    "register_store",
]
