"""
Pytest configuration and shared fixtures.

Provides an in-memory pipeline (store, cache, resolver, deferred queue,
engine), a controllable clock, notification factories and isolated config
environments used across the test suite.
"""

import os
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from trainee_sync.core.cache import InMemoryCache, ReadThroughCache
from trainee_sync.core.deferred import DeferredQueue, RepairPolicy
from trainee_sync.core.engine import RetryPolicy, SyncEngine
from trainee_sync.core.entities import (
    DeliveryMetadata,
    EntityKey,
    EntityKind,
    Notification,
    Operation,
    Record,
    default_entity_model,
)
from trainee_sync.core.resolver import (
    DependencyResolver,
    InMemoryRequestPublisher,
    RequestService,
)
from trainee_sync.core.store import InMemoryStore

# ==============================================================================
# Clock
# ==============================================================================


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    """Provide a fake clock starting at 2024-01-01 12:00 UTC."""
    return FakeClock()


# ==============================================================================
# Notification Fixtures
# ==============================================================================


@pytest.fixture
def make_notification(clock) -> Callable[..., Notification]:
    """
    Factory for notifications.

    Usage:
        def test_something(make_notification):
            n = make_notification("update", EntityKind.POST, 42, {"programmeId": "7"})
    """
    counter = {"n": 0}

    def factory(
        operation: str,
        kind: EntityKind,
        natural_id: str | int,
        data: dict[str, Any] | None = None,
        *,
        message_id: str | None = None,
        receive_count: int = 1,
        timestamp: datetime | None = None,
    ) -> Notification:
        counter["n"] += 1
        key = EntityKey.of(kind, natural_id)
        op = Operation(operation)
        record = None
        if not op.is_delete or data is not None:
            record = Record(key=key, data={"id": str(natural_id), **(data or {})})
        return Notification(
            operation=op,
            key=key,
            record=record,
            delivery=DeliveryMetadata(
                message_id=message_id or f"msg-{counter['n']}",
                received_at=clock(),
                receive_count=receive_count,
                timestamp=timestamp,
            ),
        )

    return factory


# ==============================================================================
# Pipeline Fixtures
# ==============================================================================


@pytest.fixture
def entity_model():
    return default_entity_model()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def cache_backend():
    return InMemoryCache()


@pytest.fixture
def records(cache_backend, store):
    """Read-through cache over the in-memory store."""
    return ReadThroughCache(cache_backend, store, ttl_seconds=60)


@pytest.fixture
def publisher():
    return InMemoryRequestPublisher()


@pytest.fixture
def request_service(publisher, cache_backend):
    return RequestService(publisher, cache_backend, ttl_seconds=300)


@pytest.fixture
def repair_policy():
    return RepairPolicy(max_attempts=3, max_age=timedelta(minutes=15))


@pytest.fixture
def deferred(repair_policy, clock):
    return DeferredQueue(repair_policy, clock=clock)


@pytest.fixture
def no_sleep_retry():
    """Retry policy that never sleeps, with three attempts."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False, sleep=lambda _: None)


@pytest.fixture
def engine(entity_model, store, request_service, deferred, records, no_sleep_retry, clock):
    """Fully wired engine over in-memory components."""
    return SyncEngine(
        entity_model,
        store,
        DependencyResolver(entity_model, store, request_service),
        deferred,
        cache=records,
        retry=no_sleep_retry,
        clock=clock,
    )


# ==============================================================================
# Environment Fixtures
# ==============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """
    Provide a clean environment without TRAINEE_SYNC_* env vars.

    Removes all TRAINEE_SYNC_* environment variables to ensure tests
    don't inherit configuration from the system.
    """
    for key in list(os.environ.keys()):
        if key.startswith("TRAINEE_SYNC_"):
            monkeypatch.delenv(key, raising=False)

    return monkeypatch


@pytest.fixture
def isolated_config(clean_env, tmp_path, monkeypatch):
    """
    Provide completely isolated config environment.

    Sets XDG_CONFIG_HOME and the working directory to temporary locations
    to prevent tests from loading system, user or project configs.
    """
    from trainee_sync.core.config import clear_cache

    config_home = tmp_path / "config"
    config_home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))

    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)

    clear_cache()
    yield config_home
    clear_cache()
