"""
Dependency resolution for incoming notifications.

The resolver answers one question: can this notification be applied now?
It extracts the record's references through the entity model and checks
each one directly against the store. The cache is never consulted here,
since a stale cache entry could make a missing parent look present.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from trainee_sync.core.entities.models import EntityKey, Notification
from trainee_sync.core.entities.registry import EntityModel
from trainee_sync.core.store.backend import StoreBackend

from .requests import DataRequester

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Ready when nothing is missing; otherwise the keys still absent."""

    missing: frozenset[EntityKey] = frozenset()

    @property
    def is_ready(self) -> bool:
        return not self.missing

    @classmethod
    def ready(cls) -> Resolution:
        return cls()

    def describe(self) -> str:
        if self.is_ready:
            return "ready"
        return "missing " + ", ".join(sorted(str(k) for k in self.missing))


class DependencyResolver:
    """
    Checks a notification's references against the store.

    Args:
        entity_model: Source of dependency edges
        store: Store looked up for each reference
        requester: Optional on-demand fetcher asked for every missing key
    """

    def __init__(
        self,
        entity_model: EntityModel,
        store: StoreBackend,
        requester: DataRequester | None = None,
    ) -> None:
        self.entity_model = entity_model
        self.store = store
        self.requester = requester

    def check(self, notification: Notification) -> Resolution:
        """
        Decide whether ``notification`` can be applied.

        Deletes are always ready: removing a record cannot break
        referential completeness of the record being removed.

        Raises:
            StoreUnavailableError: If a store lookup fails transiently
        """
        if notification.operation.is_delete or notification.record is None:
            return Resolution.ready()

        references = self.entity_model.extract_references(notification.record)
        missing = frozenset(key for key in references if not self.store.exists(key))
        if not missing:
            return Resolution.ready()

        logger.debug("%s is missing %d dependencies", notification.key, len(missing))
        if self.requester is not None:
            for key in sorted(missing, key=str):
                self.requester.request(key)
        return Resolution(missing=missing)
