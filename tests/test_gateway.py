"""
Tests for the inbound gateway, the in-memory transport and the worker pool.
"""

import json
import time
from unittest.mock import Mock

import pytest

from trainee_sync.core.engine import FailureReason
from trainee_sync.core.entities import EntityKey, EntityKind
from trainee_sync.core.gateway import (
    DeadLetter,
    GatewayAction,
    InboundGateway,
    InMemoryTransport,
    TransportError,
    TransportMessage,
    WorkerPool,
    load_messages,
    write_dead_letters,
)
from trainee_sync.core.resolver import Resolution
from trainee_sync.core.store import StoreError, StoreUnavailableError


def envelope(operation, kind, natural_id, **fields):
    body = {"operation": operation, "kind": kind, "id": str(natural_id)}
    if operation != "delete":
        body["record"] = {"id": str(natural_id), **fields}
    return json.dumps(body)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def gateway(engine, transport, entity_model):
    return InboundGateway(engine, transport, entity_model, max_receive_count=3)


def deliver(transport, gateway):
    """Receive one message and hand it to the gateway."""
    (message,) = transport.receive(1)
    return gateway.handle(message)


# ==============================================================================
# Transport
# ==============================================================================


class TestInMemoryTransport:
    def test_receive_moves_to_in_flight(self, transport):
        transport.send("a", message_id="1")
        transport.send("b", message_id="2")
        batch = transport.receive(1)
        assert [m.message_id for m in batch] == ["1"]
        assert transport.in_flight_count == 1
        assert transport.ready_count == 1

    def test_release_increments_receive_count(self, transport):
        transport.send("a", message_id="1")
        (message,) = transport.receive()
        transport.release(message)
        (again,) = transport.receive()
        assert again.message_id == "1"
        assert again.receive_count == 2

    def test_settling_unknown_message_raises(self, transport):
        with pytest.raises(TransportError):
            transport.ack(TransportMessage(message_id="nope", body=""))

    def test_redeliver_in_flight(self, transport):
        transport.send("a", message_id="1")
        transport.receive()
        assert transport.redeliver_in_flight() == 1
        (message,) = transport.receive()
        assert message.receive_count == 2

    def test_receive_waits_for_message(self, transport):
        start = time.monotonic()
        assert transport.receive(wait_seconds=0.05) == []
        assert time.monotonic() - start >= 0.04


# ==============================================================================
# Gateway
# ==============================================================================


class TestInboundGateway:
    """Test message settlement."""

    def test_applied_message_acknowledged(self, gateway, transport, store):
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        result = deliver(transport, gateway)

        assert result.action is GatewayAction.ACKNOWLEDGED
        assert result.outcome.acknowledged
        assert transport.acknowledged == ["p7"]
        assert transport.in_flight_count == 0
        assert store.exists(EntityKey.of(EntityKind.PROGRAMME, 7))

    def test_deferred_message_held_until_cascade(self, gateway, transport, store):
        transport.send(envelope("update", "Post", 42, programmeId="7"), message_id="post")
        result = deliver(transport, gateway)

        assert result.action is GatewayAction.DEFERRED
        assert transport.acknowledged == []
        assert transport.in_flight_count == 1
        assert gateway.pending_count == 1

        transport.send(envelope("create", "Programme", 7), message_id="p7")
        deliver(transport, gateway)

        assert transport.acknowledged == ["p7", "post"]
        assert gateway.pending_count == 0
        assert store.get(EntityKey.of(EntityKind.POST, 42)).record.data["programmeId"] == "7"

    def test_applied_within_same_ingest_reported_acknowledged(self, gateway, transport, engine):
        """A parent stored between the check and the defer settles the message in the same call."""
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        deliver(transport, gateway)
        engine.resolver = Mock()
        engine.resolver.check.side_effect = [
            Resolution(missing=frozenset({EntityKey.of(EntityKind.PROGRAMME, 7)})),
            Resolution.ready(),
        ]
        transport.send(envelope("update", "Post", 42, programmeId="7"), message_id="post")

        result = deliver(transport, gateway)

        assert result.action is GatewayAction.ACKNOWLEDGED
        assert result.outcome.acknowledged
        assert transport.acknowledged == ["p7", "post"]
        assert gateway.pending_count == 0

    def test_deferred_message_acknowledged_after_sweep(self, gateway, transport, engine, clock):
        transport.send(envelope("update", "Post", 42, programmeId="7"), message_id="post")
        deliver(transport, gateway)

        engine.sweep(clock.advance(3600))

        assert transport.acknowledged == ["post"]
        assert gateway.pending_count == 0

    def test_duplicate_delivery_acknowledged_twice(self, gateway, transport, store):
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        deliver(transport, gateway)
        transport.put(
            TransportMessage(message_id="p7", body=envelope("create", "Programme", 7), receive_count=2)
        )
        result = deliver(transport, gateway)

        assert result.action is GatewayAction.ACKNOWLEDGED
        assert result.outcome.redelivery
        assert transport.acknowledged == ["p7", "p7"]
        assert store.count() == 1
        assert transport.dead_letters == []

    def test_malformed_message_dead_lettered(self, gateway, transport):
        transport.send("{not json", message_id="bad")
        result = deliver(transport, gateway)

        assert result.action is GatewayAction.DEAD_LETTERED
        (letter,) = transport.dead_letters
        assert letter.reason is FailureReason.MALFORMED
        assert letter.message.message_id == "bad"
        assert transport.ready_count == 0

    def test_control_message_acknowledged(self, gateway, transport):
        body = json.dumps(
            {"data": {}, "metadata": {"operation": "drop-table", "table-name": "Post", "record-type": "control"}}
        )
        transport.send(body, message_id="ctl")
        result = deliver(transport, gateway)
        assert result.action is GatewayAction.ACKNOWLEDGED
        assert result.outcome is None
        assert transport.acknowledged == ["ctl"]

    def test_failing_message_released_then_dead_lettered(self, gateway, transport, store):
        store.upsert = Mock(side_effect=StoreError("rejected"))
        transport.send(envelope("create", "Programme", 7), message_id="p7")

        actions = [deliver(transport, gateway).action for _ in range(3)]

        assert actions == [
            GatewayAction.RELEASED,
            GatewayAction.RELEASED,
            GatewayAction.DEAD_LETTERED,
        ]
        (letter,) = transport.dead_letters
        assert letter.reason is FailureReason.PERMANENT_ERROR
        assert letter.message.receive_count == 3
        assert "rejected" in letter.error
        assert transport.ready_count == 0
        assert transport.in_flight_count == 0

    def test_exhausted_retries_reason_recorded(self, engine, transport, entity_model, store):
        gateway = InboundGateway(engine, transport, entity_model, max_receive_count=1)
        store.upsert = Mock(side_effect=StoreUnavailableError("down"))
        transport.send(envelope("create", "Programme", 7), message_id="p7")

        result = deliver(transport, gateway)

        assert result.action is GatewayAction.DEAD_LETTERED
        assert transport.dead_letters[0].reason is FailureReason.EXHAUSTED_RETRIES

    def test_engine_error_leaves_message_in_flight(self, gateway, transport, engine):
        engine.ingest = Mock(side_effect=RuntimeError("boom"))
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        with pytest.raises(RuntimeError):
            deliver(transport, gateway)
        assert gateway.pending_count == 0
        assert transport.in_flight_count == 1


# ==============================================================================
# Message files
# ==============================================================================


class TestMessageFiles:
    def test_load_messages(self, tmp_path):
        path = tmp_path / "replay.jsonl"
        lines = [
            envelope("create", "Programme", 7),
            "",
            json.dumps({"message_id": "given", "body": envelope("delete", "Post", 1), "receive_count": 2}),
            "garbage",
        ]
        path.write_text("\n".join(lines) + "\n")

        messages = load_messages(path)

        assert [m.message_id for m in messages] == ["replay-1", "given", "replay-4"]
        assert json.loads(messages[0].body)["kind"] == "Programme"
        assert messages[1].receive_count == 2
        assert messages[2].body == "garbage"

    def test_write_dead_letters_appends(self, tmp_path):
        path = tmp_path / "out" / "dead.jsonl"
        letter = DeadLetter(
            message=TransportMessage(message_id="bad", body="x"),
            reason=FailureReason.MALFORMED,
            error="Invalid JSON",
        )
        assert write_dead_letters(path, [letter]) == 1
        write_dead_letters(path, [letter])

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        restored = DeadLetter.model_validate_json(lines[0])
        assert restored.reason is FailureReason.MALFORMED
        assert restored.message.message_id == "bad"


# ==============================================================================
# Worker pool
# ==============================================================================


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestWorkerPool:
    """Test concurrent processing."""

    def test_run_until_idle_out_of_order(self, gateway, transport, engine, store):
        for i in range(20):
            transport.send(envelope("create", "Post", i, programmeId="7"), message_id=f"post-{i}")
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        pool = WorkerPool(gateway, transport, engine, workers=4, batch_size=3)

        summary = pool.run_until_idle()

        assert summary.handled == 21
        assert summary.count(GatewayAction.ACKNOWLEDGED) + summary.count(GatewayAction.DEFERRED) == 21
        assert store.count(EntityKind.POST) == 20
        assert sorted(transport.acknowledged) == sorted(["p7", *(f"post-{i}" for i in range(20))])
        assert transport.in_flight_count == 0
        assert len(engine.deferred) == 0

    def test_run_until_idle_picks_up_released(self, gateway, transport, engine, store):
        store.upsert = Mock(side_effect=StoreError("rejected"))
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        pool = WorkerPool(gateway, transport, engine, workers=2)

        summary = pool.run_until_idle()

        assert summary.count(GatewayAction.RELEASED) == 2
        assert summary.count(GatewayAction.DEAD_LETTERED) == 1
        assert len(transport.dead_letters) == 1

    def test_handler_error_counted(self, gateway, transport, engine):
        engine.ingest = Mock(side_effect=RuntimeError("boom"))
        transport.send(envelope("create", "Programme", 7), message_id="p7")
        pool = WorkerPool(gateway, transport, engine, workers=1)

        summary = pool.run_until_idle()

        assert summary.errors == 1
        assert transport.in_flight_count == 1

    def test_serve_and_stop(self, gateway, transport, engine):
        pool = WorkerPool(
            gateway, transport, engine, workers=2, poll_wait_seconds=0.02, sweep_interval_seconds=0.02
        )
        pool.serve()
        try:
            assert pool.running
            with pytest.raises(RuntimeError):
                pool.serve()
            for i in range(5):
                transport.send(envelope("create", "Programme", i), message_id=f"p{i}")
            assert _wait_for(lambda: len(transport.acknowledged) == 5)
        finally:
            pool.stop()
        assert not pool.running

    def test_worker_survives_receive_failure(self, engine, entity_model, caplog):
        class FlakyTransport(InMemoryTransport):
            def __init__(self):
                super().__init__()
                self.failures = 1

            def receive(self, max_messages=10, wait_seconds=0.0):
                if self.failures:
                    self.failures -= 1
                    raise TransportError("connection reset")
                return super().receive(max_messages, wait_seconds)

        flaky = FlakyTransport()
        gateway = InboundGateway(engine, flaky, entity_model, max_receive_count=3)
        pool = WorkerPool(
            gateway, flaky, engine, workers=1, poll_wait_seconds=0.02, sweep_interval_seconds=0.02
        )
        pool.serve()
        try:
            flaky.send(envelope("create", "Programme", 7), message_id="p7")
            assert _wait_for(lambda: flaky.acknowledged == ["p7"])
        finally:
            pool.stop()
        assert "Receive failed" in caplog.text


    def test_sweeper_repairs_while_serving(self, gateway, transport, engine, clock):
        transport.send(envelope("update", "Post", 42, programmeId="7"), message_id="post")
        deliver(transport, gateway)
        clock.advance(3600)

        pool = WorkerPool(
            gateway, transport, engine, workers=1, poll_wait_seconds=0.02, sweep_interval_seconds=0.02
        )
        pool.serve()
        try:
            assert _wait_for(lambda: transport.acknowledged == ["post"])
        finally:
            pool.stop()
        assert engine.stats.repaired == 1
