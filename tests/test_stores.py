"""
Tests for record store backends.

Both backends run the same contract tests; SQLite adds persistence and
error translation checks.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from trainee_sync.core.config import StoreConfig
from trainee_sync.core.entities import EntityKey, EntityKind, Record
from trainee_sync.core.store import (
    InMemoryStore,
    SqliteStore,
    StoreError,
    StoreUnavailableError,
    WriteOutcome,
    get_store,
    list_stores,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
KEY = EntityKey.of(EntityKind.PROGRAMME, 7)


def _record(key: EntityKey = KEY, **data) -> Record:
    return Record(key=key, data={"id": key.natural_id, **data}, table=key.kind.value)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStore()
    else:
        backend = SqliteStore(tmp_path / "records.db")
    yield backend
    backend.close()


class TestStoreContract:
    """Behaviour every backend must share."""

    def test_get_missing(self, any_store):
        assert any_store.get(KEY) is None
        assert not any_store.exists(KEY)

    def test_upsert_then_get(self, any_store):
        assert any_store.upsert(KEY, _record(name="Surgery"), T0) is WriteOutcome.APPLIED

        stored = any_store.get(KEY)
        assert stored.record.data == {"id": "7", "name": "Surgery"}
        assert stored.applied_at == T0
        assert stored.key == KEY
        assert any_store.exists(KEY)

    def test_upsert_idempotent(self, any_store):
        """Same record and version twice: same state, success both times."""
        record = _record(name="Surgery")
        assert any_store.upsert(KEY, record, T0) is WriteOutcome.APPLIED
        first = any_store.get(KEY)
        assert any_store.upsert(KEY, record, T0) is WriteOutcome.APPLIED
        assert any_store.get(KEY) == first
        assert any_store.count() == 1

    def test_newer_upsert_replaces(self, any_store):
        any_store.upsert(KEY, _record(name="old"), T0)
        later = T0 + timedelta(seconds=1)
        assert any_store.upsert(KEY, _record(name="new"), later) is WriteOutcome.APPLIED
        assert any_store.get(KEY).record.data["name"] == "new"

    def test_stale_upsert_conflicts(self, any_store):
        any_store.upsert(KEY, _record(name="new"), T0)
        earlier = T0 - timedelta(seconds=1)
        assert any_store.upsert(KEY, _record(name="old"), earlier) is WriteOutcome.CONFLICT
        assert any_store.get(KEY).record.data["name"] == "new"

    def test_delete(self, any_store):
        any_store.upsert(KEY, _record(), T0)
        assert any_store.delete(KEY, T0 + timedelta(seconds=1)) is WriteOutcome.APPLIED
        assert any_store.get(KEY) is None

    def test_delete_missing(self, any_store):
        assert any_store.delete(KEY, T0) is WriteOutcome.NOT_FOUND

    def test_stale_delete_conflicts(self, any_store):
        any_store.upsert(KEY, _record(), T0)
        assert any_store.delete(KEY, T0 - timedelta(minutes=1)) is WriteOutcome.CONFLICT
        assert any_store.exists(KEY)

    def test_count_by_kind(self, any_store):
        any_store.upsert(KEY, _record(), T0)
        post = EntityKey.of(EntityKind.POST, 42)
        any_store.upsert(post, _record(post, programmeId="7"), T0)
        assert any_store.count() == 2
        assert any_store.count(EntityKind.POST) == 1
        assert any_store.count(EntityKind.SITE) == 0

    def test_returned_record_is_a_copy(self, any_store):
        any_store.upsert(KEY, _record(name="a"), T0)
        any_store.get(KEY).record.data["name"] = "mutated"
        assert any_store.get(KEY).record.data["name"] == "a"


class TestSqliteStore:
    """SQLite-specific behaviour."""

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "nested" / "records.db"
        store = SqliteStore(path)
        store.upsert(KEY, _record(name="Surgery"), T0)
        store.close()

        reopened = SqliteStore(path)
        try:
            assert reopened.get(KEY).record.data["name"] == "Surgery"
        finally:
            reopened.close()

    def test_in_memory_database(self):
        store = SqliteStore(":memory:")
        store.upsert(KEY, _record(), T0)
        assert store.count() == 1
        store.close()

    def test_closed_connection_raises_store_error(self, tmp_path):
        store = SqliteStore(tmp_path / "records.db")
        store.close()
        with pytest.raises(StoreError):
            store.get(KEY)

    def test_locked_database_unavailable(self, tmp_path):
        path = tmp_path / "records.db"
        store = SqliteStore(path, timeout=0.05)
        blocker = sqlite3.connect(path, timeout=0.05)
        blocker.execute("BEGIN EXCLUSIVE")
        try:
            with pytest.raises(StoreUnavailableError):
                store.upsert(KEY, _record(), T0)
        finally:
            blocker.rollback()
            blocker.close()
            store.close()


class TestStoreRegistry:
    """Test backend registration."""

    def test_registered(self):
        assert {"memory", "sqlite"} <= set(list_stores())

    def test_get_store_memory(self):
        assert isinstance(get_store(StoreConfig(backend="memory")), InMemoryStore)

    def test_get_store_sqlite(self, tmp_path):
        store = get_store(StoreConfig(backend="sqlite", path=str(tmp_path / "r.db")))
        assert isinstance(store, SqliteStore)
        store.close()

    def test_unknown_backend(self):
        config = StoreConfig.model_construct(backend="mongo", path="")
        with pytest.raises(ValueError, match="not registered"):
            get_store(config)
