"""
Tests for dependency resolution and on-demand data requests.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

from trainee_sync.core.cache import CacheError, InMemoryCache
from trainee_sync.core.entities import EntityKey, EntityKind, Record
from trainee_sync.core.resolver import (
    DataRequest,
    DependencyResolver,
    InMemoryRequestPublisher,
    RequestPublishError,
    RequestService,
    Resolution,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
PROGRAMME_7 = EntityKey.of(EntityKind.PROGRAMME, 7)
TRUST_1 = EntityKey.of(EntityKind.TRUST, 1)


class TestResolution:
    def test_ready(self):
        assert Resolution.ready().is_ready
        assert Resolution.ready().describe() == "ready"

    def test_missing(self):
        resolution = Resolution(missing=frozenset({TRUST_1, PROGRAMME_7}))
        assert not resolution.is_ready
        assert resolution.describe() == "missing Programme#7, Trust#1"


class TestDependencyResolver:
    """Test readiness checks against the store."""

    def test_missing_dependency(self, entity_model, store, make_notification):
        resolver = DependencyResolver(entity_model, store)
        post = make_notification("update", EntityKind.POST, 42, {"programmeId": "7"})
        assert resolver.check(post).missing == {PROGRAMME_7}

    def test_present_dependency(self, entity_model, store, make_notification):
        store.upsert(PROGRAMME_7, Record(key=PROGRAMME_7, data={"id": "7"}), T0)
        resolver = DependencyResolver(entity_model, store)
        post = make_notification("update", EntityKind.POST, 42, {"programmeId": "7"})
        assert resolver.check(post).is_ready

    def test_no_references(self, entity_model, store, make_notification):
        resolver = DependencyResolver(entity_model, store)
        assert resolver.check(make_notification("create", EntityKind.PROGRAMME, 7)).is_ready

    def test_delete_always_ready(self, entity_model, store, make_notification):
        resolver = DependencyResolver(entity_model, store)
        delete = make_notification("delete", EntityKind.POST, 42, {"programmeId": "7"})
        assert resolver.check(delete).is_ready

    def test_uses_store_not_cache(self, entity_model, store, make_notification):
        """Readiness is decided by a direct store lookup."""
        store.exists = Mock(return_value=True)
        resolver = DependencyResolver(entity_model, store)
        post = make_notification("update", EntityKind.POST, 42, {"programmeId": "7"})
        assert resolver.check(post).is_ready
        store.exists.assert_called_once_with(PROGRAMME_7)

    def test_requests_each_missing_key(self, entity_model, store, make_notification):
        requester = Mock()
        resolver = DependencyResolver(entity_model, store, requester)
        post = make_notification(
            "update",
            EntityKind.POST,
            42,
            {"programmeId": "7", "employingBodyId": "1", "trainingBodyId": "1"},
        )
        resolver.check(post)
        assert [c.args[0] for c in requester.request.call_args_list] == [PROGRAMME_7, TRUST_1]


class TestRequestService:
    """Test de-duplicated data requests."""

    def test_publishes_request(self, request_service, publisher):
        assert request_service.request(PROGRAMME_7)
        assert [r.body() for r in publisher.requests] == [{"table": "Programme", "id": "7"}]

    def test_deduplicates_within_ttl(self, request_service, publisher):
        request_service.request(PROGRAMME_7)
        assert not request_service.request(PROGRAMME_7)
        assert len(publisher.requests) == 1

    def test_requests_again_after_ttl(self, publisher):
        now = [0.0]
        service = RequestService(publisher, InMemoryCache(clock=lambda: now[0]), ttl_seconds=10)
        service.request(PROGRAMME_7)
        now[0] = 11.0
        assert service.request(PROGRAMME_7)
        assert len(publisher.requests) == 2

    def test_publish_failure_clears_marker(self, cache_backend):
        publisher = Mock()
        publisher.publish.side_effect = [RequestPublishError("topic down"), None]
        service = RequestService(publisher, cache_backend)

        assert not service.request(PROGRAMME_7)
        assert service.request(PROGRAMME_7)

    def test_cache_unavailable_still_publishes(self, publisher):
        cache = Mock()
        cache.add.side_effect = CacheError("down")
        service = RequestService(publisher, cache)
        assert service.request(PROGRAMME_7)
        assert len(publisher.requests) == 1

    def test_data_request_for_key(self):
        request = DataRequest.for_key(EntityKey.of(EntityKind.PLACEMENT_SPECIALTY, 5))
        assert request.body() == {"table": "PlacementSpecialty", "id": "5"}
