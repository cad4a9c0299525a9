"""
Sync engine: apply or defer each notification, then cascade.

The engine drives every notification through the state machine in
:mod:`trainee_sync.core.engine.models`:

1. Resolve dependencies against the store.
2. Ready: hold the key lock, write through the retry policy, invalidate
   the cache, acknowledge, and release everything deferred on this key.
3. Missing: park in the deferred queue. A notification past the repair
   window is applied anyway and logged as a data-quality problem.

Released notifications are processed one at a time from a work list, each
taking only its own key lock, so a cascade is never a single long critical
section.

Example:
    >>> engine = SyncEngine(model, store, resolver, DeferredQueue())
    >>> engine.ingest(post_update).state
    <NotificationState.DEFERRED: 'deferred'>
    >>> engine.ingest(programme_create).state
    <NotificationState.ACKNOWLEDGED: 'acknowledged'>
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from trainee_sync.core.cache.backend import CacheError
from trainee_sync.core.cache.readthrough import ReadThroughCache
from trainee_sync.core.deferred.queue import DeferredQueue
from trainee_sync.core.entities.models import EntityKey, Notification
from trainee_sync.core.entities.registry import EntityModel
from trainee_sync.core.resolver.resolver import DependencyResolver, Resolution
from trainee_sync.core.store.backend import StoreBackend, StoreError, WriteOutcome

from .locks import KeyLockRegistry
from .models import EngineStats, FailureReason, NotificationState, SyncOutcome
from .retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

State = NotificationState


@runtime_checkable
class SyncListener(Protocol):
    """Told about every notification that reaches a terminal state."""

    def on_settled(self, notification: Notification, outcome: SyncOutcome) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """
    Orchestrates resolve, apply, defer and cascade.

    Args:
        entity_model: Dependency graph for the synchronized kinds
        store: Record store written on apply
        resolver: Readiness check for incoming notifications
        deferred: Queue holding notifications waiting on dependencies
        cache: Read-through cache invalidated after each write
        retry: Retry budget for transient store failures
        locks: Per-key lock registry
        clock: Time source for the repair window
    """

    def __init__(
        self,
        entity_model: EntityModel,
        store: StoreBackend,
        resolver: DependencyResolver,
        deferred: DeferredQueue,
        *,
        cache: ReadThroughCache | None = None,
        retry: RetryPolicy | None = None,
        locks: KeyLockRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.entity_model = entity_model
        self.store = store
        self.resolver = resolver
        self.deferred = deferred
        self.cache = cache
        self.retry = retry or RetryPolicy()
        self.locks = locks or KeyLockRegistry()
        self._clock = clock
        self._listeners: list[SyncListener] = []
        self._stats = EngineStats()
        self._stats_lock = threading.Lock()

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    @property
    def stats(self) -> EngineStats:
        with self._stats_lock:
            return replace(self._stats)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def ingest(self, notification: Notification) -> SyncOutcome:
        """
        Process one notification and everything it unblocks.

        Returns:
            The outcome of ``notification`` itself. Cascaded notifications
            are reported to listeners.
        """
        logger.debug("Ingesting %s", notification.describe())
        outcome = SyncOutcome.start(notification)
        self._run(notification, outcome)
        return outcome

    def sweep(self, now: datetime | None = None) -> list[SyncOutcome]:
        """
        Apply deferred notifications that have outlived the repair window.

        Returns:
            Outcomes of the swept notifications, in deferral order
        """
        due = self.deferred.sweep(now or self._clock())
        outcomes = []
        for notification in due:
            outcome = SyncOutcome.resume(notification)
            self._run(notification, outcome, force=True)
            outcomes.append(outcome)
        if outcomes:
            logger.info("Sweep applied %d overdue notifications", len(outcomes))
        return outcomes

    def reconcile(self) -> int:
        """
        Release deferred notifications whose dependencies are already stored.

        Used after restoring a deferred snapshot, when dependencies may have
        been applied by another process in the meantime.

        Returns:
            Number of notifications released
        """
        waiting: set[EntityKey] = set()
        for entry in self.deferred.entries():
            waiting.update(entry.missing)
        released: list[Notification] = []
        for key in sorted(waiting, key=str):
            if self._is_present(key):
                released.extend(self.deferred.release(key))
        self._cascade(released)
        return len(released)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, notification: Notification, outcome: SyncOutcome, force: bool = False) -> None:
        self._cascade(self._process(notification, outcome, force))

    def _cascade(self, released: list[Notification]) -> None:
        work: deque[Notification] = deque(released)
        while work:
            notification = work.popleft()
            self._count("released")
            logger.info("Released %s", notification.describe())
            outcome = SyncOutcome.resume(notification, cascaded=True)
            work.extend(self._process(notification, outcome))

    def _process(
        self, notification: Notification, outcome: SyncOutcome, force: bool = False
    ) -> list[Notification]:
        """Drive one notification as far as it can go. Returns released notifications."""
        outcome.advance(State.RESOLVING)
        try:
            resolution, _ = self.retry.call(
                lambda: self.resolver.check(notification),
                label=f"resolve {notification.key}",
            )
        except RetryExhaustedError as e:
            self._fail(notification, outcome, FailureReason.EXHAUSTED_RETRIES, e)
            return []
        except StoreError as e:
            self._fail(notification, outcome, FailureReason.PERMANENT_ERROR, e)
            return []

        if resolution.is_ready:
            outcome.advance(State.READY)
            return self._apply(notification, outcome)

        outcome.missing = set(resolution.missing)
        outcome.advance(State.MISSING)
        if force:
            return self._repair(notification, outcome, resolution)
        return self._defer(notification, outcome, resolution)

    def _defer(
        self, notification: Notification, outcome: SyncOutcome, resolution: Resolution
    ) -> list[Notification]:
        entry = self.deferred.defer(notification, resolution.missing)
        if self.deferred.policy.is_due(entry, self._clock()):
            # Only the path that takes the entry may apply it.
            if self.deferred.take(notification.identity) is not None:
                return self._repair(notification, outcome, resolution)

        outcome.advance(State.DEFERRED)
        self._count("deferred")
        logger.info(
            "Deferred %s: %s (attempt %d)",
            notification.describe(),
            resolution.describe(),
            entry.attempts,
        )

        # A dependency applied between the check and the defer would
        # otherwise never release this entry.
        released: list[Notification] = []
        for key in sorted(entry.missing, key=str):
            if self._is_present(key):
                released.extend(self.deferred.release(key))
        return released

    def _repair(
        self, notification: Notification, outcome: SyncOutcome, resolution: Resolution
    ) -> list[Notification]:
        logger.warning(
            "Data quality: applying %s with unresolved dependencies (%s)",
            notification.describe(),
            resolution.describe(),
        )
        outcome.repaired = True
        self._count("repaired")
        outcome.advance(State.READY)
        return self._apply(notification, outcome)

    def _apply(self, notification: Notification, outcome: SyncOutcome) -> list[Notification]:
        key = notification.key
        outcome.advance(State.APPLYING)
        with self.locks.hold(key):
            try:
                write, attempts = self.retry.call(
                    lambda: self._write(notification),
                    label=f"apply {notification.describe()}",
                )
            except RetryExhaustedError as e:
                outcome.attempts = e.attempts
                self._fail(notification, outcome, FailureReason.EXHAUSTED_RETRIES, e)
                return []
            except StoreError as e:
                self._fail(notification, outcome, FailureReason.PERMANENT_ERROR, e)
                return []

            outcome.attempts = attempts
            outcome.write = write
            outcome.advance(State.APPLIED)
            self._invalidate(key)

        outcome.redelivery = (
            notification.delivery.is_redelivery or write is not WriteOutcome.APPLIED
        )
        if write is WriteOutcome.APPLIED:
            logger.info("Applied %s", notification.describe())
            self._count("applied")
        else:
            logger.info("Already applied %s (%s)", notification.describe(), write.value)
        if outcome.redelivery:
            self._count("redeliveries")

        outcome.advance(State.ACKNOWLEDGED)
        self._notify(notification, outcome)

        if notification.operation.is_delete:
            return []
        return self.deferred.release(key)

    def _write(self, notification: Notification) -> WriteOutcome:
        version = notification.delivery.version
        if notification.operation.is_delete:
            return self.store.delete(notification.key, version)
        assert notification.record is not None
        return self.store.upsert(notification.key, notification.record, version)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _invalidate(self, key: EntityKey) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate(key)
        except CacheError as e:
            # The entry expires or is refilled on the next miss.
            logger.warning("Cache invalidation failed for %s: %s", key, e)

    def _is_present(self, key: EntityKey) -> bool:
        try:
            return self.store.exists(key)
        except StoreError as e:
            logger.debug("Re-check of %s failed, leaving deferred: %s", key, e)
            return False

    def _fail(
        self,
        notification: Notification,
        outcome: SyncOutcome,
        reason: FailureReason,
        error: Exception,
    ) -> None:
        outcome.error = str(error)
        outcome.reason = reason
        outcome.advance(State.FAILED)
        self._count("failed")
        logger.error("Failed %s (%s): %s", notification.describe(), reason.value, error)
        self._notify(notification, outcome)

    def _notify(self, notification: Notification, outcome: SyncOutcome) -> None:
        for listener in self._listeners:
            try:
                listener.on_settled(notification, outcome)
            except Exception:
                # The message stays unacknowledged and is redelivered.
                logger.exception("Listener failed for %s", notification.describe())

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + amount)

