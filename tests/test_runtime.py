"""
Tests for runtime wiring and the deferred snapshot lifecycle.
"""

import json
from datetime import datetime, timezone

import pytest

from trainee_sync.core.config import (
    DeferredConfig,
    RequestConfig,
    StoreConfig,
    SyncConfig,
)
from trainee_sync.core.entities import EntityKey, EntityKind, Record
from trainee_sync.core.gateway import InMemoryTransport, TransportMessage
from trainee_sync.core.runtime import SyncRuntime
from trainee_sync.core.store import InMemoryStore, SqliteStore

PROGRAMME_7 = EntityKey.of(EntityKind.PROGRAMME, 7)
POST_42 = EntityKey.of(EntityKind.POST, 42)

POST_BODY = json.dumps(
    {"operation": "update", "kind": "Post", "id": "42", "record": {"id": "42", "programmeId": "7"}}
)
PROGRAMME_BODY = json.dumps(
    {"operation": "create", "kind": "Programme", "id": "7", "record": {"id": "7"}}
)


@pytest.fixture
def durable_config():
    return SyncConfig(
        store=StoreConfig(backend="sqlite", path="data/records.db"),
        deferred=DeferredConfig(durability="file", snapshot_path="data/deferred.jsonl"),
    )


class TestFromConfig:
    def test_defaults_are_in_memory(self):
        runtime = SyncRuntime.from_config(SyncConfig(), InMemoryTransport())
        assert isinstance(runtime.store, InMemoryStore)
        assert runtime.snapshot is None
        assert runtime.engine.resolver.requester is not None
        assert runtime.gateway.max_receive_count == 5

    def test_paths_resolved_against_project_dir(self, durable_config, tmp_path):
        runtime = SyncRuntime.from_config(durable_config, InMemoryTransport(), project_dir=tmp_path)
        try:
            assert isinstance(runtime.store, SqliteStore)
            assert runtime.snapshot.path == tmp_path / "data" / "deferred.jsonl"
            assert (tmp_path / "data" / "records.db").exists()
        finally:
            runtime.shutdown()

    def test_requests_can_be_disabled(self):
        config = SyncConfig(requests=RequestConfig(enabled=False))
        runtime = SyncRuntime.from_config(config, InMemoryTransport())
        assert runtime.engine.resolver.requester is None

    def test_missing_dependency_requested(self):
        transport = InMemoryTransport()
        runtime = SyncRuntime.from_config(SyncConfig(), transport)
        transport.send(POST_BODY, message_id="post")
        runtime.pool.run_until_idle()
        assert [r.body() for r in runtime.publisher.requests] == [
            {"table": "Programme", "id": "7"}
        ]


class TestLifecycle:
    """Test start and shutdown with a file-backed deferred queue."""

    def test_memory_durability_saves_nothing(self):
        transport = InMemoryTransport()
        runtime = SyncRuntime.from_config(SyncConfig(), transport)
        runtime.start()
        transport.send(POST_BODY, message_id="post")
        runtime.pool.run_until_idle()

        assert runtime.shutdown() == 0
        assert transport.in_flight_count == 1

    def test_snapshot_round_trip(self, durable_config, tmp_path):
        first = SyncRuntime.from_config(durable_config, InMemoryTransport(), project_dir=tmp_path)
        assert first.start() == 0
        first.transport.send(POST_BODY, message_id="post")
        first.pool.run_until_idle()
        assert len(first.deferred) == 1
        assert first.shutdown() == 1
        assert (tmp_path / "data" / "deferred.jsonl").exists()

        transport = InMemoryTransport()
        second = SyncRuntime.from_config(durable_config, transport, project_dir=tmp_path)
        try:
            assert second.start() == 1
            assert len(second.deferred) == 1
            assert not second.snapshot.exists()

            transport.send(PROGRAMME_BODY, message_id="programme")
            second.pool.run_until_idle()
            assert second.get_record(POST_42).data["programmeId"] == "7"

            # The transport's own redelivery of the deferred message is idempotent.
            transport.put(TransportMessage(message_id="post", body=POST_BODY, receive_count=2))
            second.pool.run_until_idle()
            assert sorted(transport.acknowledged) == ["post", "programme"]
            assert second.store.count(EntityKind.POST) == 1
        finally:
            second.shutdown()

    def test_restore_reconciles_with_store(self, durable_config, tmp_path):
        first = SyncRuntime.from_config(durable_config, InMemoryTransport(), project_dir=tmp_path)
        first.start()
        first.transport.send(POST_BODY, message_id="post")
        first.pool.run_until_idle()
        first.shutdown()

        second = SyncRuntime.from_config(durable_config, InMemoryTransport(), project_dir=tmp_path)
        try:
            # Applied by another process while this one was down.
            record = Record(key=PROGRAMME_7, data={"id": "7"})
            second.store.upsert(PROGRAMME_7, record, datetime.now(timezone.utc))

            assert second.start() == 1
            assert len(second.deferred) == 0
            assert second.store.exists(POST_42)
        finally:
            second.shutdown()

    def test_start_is_idempotent(self, durable_config, tmp_path):
        runtime = SyncRuntime.from_config(durable_config, InMemoryTransport(), project_dir=tmp_path)
        try:
            assert runtime.start() == 0
            assert runtime.start() == 0
        finally:
            runtime.shutdown()

    def test_shutdown_stops_serving_pool(self, durable_config, tmp_path):
        runtime = SyncRuntime.from_config(durable_config, InMemoryTransport(), project_dir=tmp_path)
        runtime.start()
        runtime.pool.poll_wait_seconds = 0.01
        runtime.pool.serve()
        runtime.shutdown()
        assert not runtime.pool.running
