"""
Deferred queue: notifications waiting on dependencies.

The queue keeps two indexes under one lock:

* ``identity -> DeferredEntry`` so a redelivered notification supersedes
  its parked copy instead of duplicating it;
* ``EntityKey -> identities waiting on it`` (insertion-ordered) so that
  storing a key finds every waiter without scanning.

Release and sweep both remove entries while holding the lock, so an entry
that becomes ready at the moment it also becomes due is handed out exactly
once.

Example:
    >>> queue = DeferredQueue()
    >>> queue.defer(post_update, {programme_key})
    >>> queue.release(programme_key)
    [Notification(...)]
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from trainee_sync.core.entities.models import EntityKey, Notification

from .models import DeferredEntry, RepairPolicy

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeferredQueue:
    """
    Thread-safe store of deferred notifications.

    Args:
        policy: Bounded repair window used by :meth:`sweep`
        clock: Time source for deferral timestamps
    """

    def __init__(
        self,
        policy: RepairPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.policy = policy or RepairPolicy()
        self._clock = clock
        self._entries: dict[str, DeferredEntry] = {}
        self._waiting: dict[EntityKey, dict[str, None]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Index maintenance (caller holds the lock)
    # ------------------------------------------------------------------

    def _index(self, entry: DeferredEntry) -> None:
        self._entries[entry.identity] = entry
        for key in entry.missing:
            self._waiting.setdefault(key, {})[entry.identity] = None

    def _unindex(self, entry: DeferredEntry) -> None:
        for key in entry.missing:
            waiters = self._waiting.get(key)
            if waiters is None:
                continue
            waiters.pop(entry.identity, None)
            if not waiters:
                del self._waiting[key]

    def _remove(self, entry: DeferredEntry) -> None:
        self._unindex(entry)
        del self._entries[entry.identity]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def defer(self, notification: Notification, missing: Iterable[EntityKey]) -> DeferredEntry:
        """
        Park ``notification`` until every key in ``missing`` is stored.

        If the same notification identity is already parked, its missing set
        is replaced, its attempt count incremented, and its original
        position and deferral time kept.

        Returns:
            A copy of the entry as stored

        Raises:
            ValueError: If ``missing`` is empty
        """
        missing_keys = set(missing)
        if not missing_keys:
            raise ValueError(f"Cannot defer {notification.describe()} with no missing keys")

        with self._lock:
            existing = self._entries.get(notification.identity)
            if existing is not None:
                self._unindex(existing)
                existing.notification = notification
                existing.missing = missing_keys
                existing.attempts += 1
                entry = existing
            else:
                entry = DeferredEntry(
                    notification=notification,
                    missing=missing_keys,
                    sequence=next(self._sequence),
                    deferred_at=self._clock(),
                )
            self._index(entry)
            return entry.model_copy(deep=True)

    def release(self, key: EntityKey) -> list[Notification]:
        """
        Mark ``key`` as satisfied.

        Returns:
            Notifications with nothing left missing, in insertion order
        """
        with self._lock:
            identities = self._waiting.pop(key, {})
            ready: list[DeferredEntry] = []
            for identity in identities:
                entry = self._entries.get(identity)
                if entry is None:
                    continue
                entry.missing.discard(key)
                if not entry.missing:
                    del self._entries[identity]
                    ready.append(entry)

        ready.sort(key=lambda e: e.sequence)
        if ready:
            logger.debug("Released %d notifications waiting on %s", len(ready), key)
        return [entry.notification for entry in ready]

    def sweep(self, now: datetime | None = None) -> list[Notification]:
        """
        Remove and return entries past the repair window, in insertion order.
        """
        now = now or self._clock()
        with self._lock:
            due = sorted(
                (e for e in self._entries.values() if self.policy.is_due(e, now)),
                key=lambda e: e.sequence,
            )
            for entry in due:
                self._remove(entry)
        return [entry.notification for entry in due]

    def take(self, identity: str) -> DeferredEntry | None:
        """Remove one entry by identity. Returns None if it is already gone."""
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                return None
            self._remove(entry)
            return entry

    def restore(self, entries: Iterable[DeferredEntry]) -> int:
        """
        Re-insert entries loaded from a snapshot, keeping their order,
        deferral times and attempt counts. Identities already present win.

        Returns:
            Number of entries restored
        """
        restored = 0
        with self._lock:
            for entry in sorted(entries, key=lambda e: e.sequence):
                if entry.identity in self._entries or not entry.missing:
                    continue
                copy = entry.model_copy(deep=True)
                copy.sequence = next(self._sequence)
                self._index(copy)
                restored += 1
        return restored

    def drain(self) -> list[DeferredEntry]:
        """Remove and return every entry in insertion order."""
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.sequence)
            self._entries.clear()
            self._waiting.clear()
        return entries

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get(self, identity: str) -> DeferredEntry | None:
        with self._lock:
            entry = self._entries.get(identity)
            return entry.model_copy(deep=True) if entry is not None else None

    def pending(self, key: EntityKey) -> list[Notification]:
        """Notifications currently waiting on ``key``, in insertion order."""
        with self._lock:
            entries = [self._entries[i] for i in self._waiting.get(key, {}) if i in self._entries]
        return [e.notification for e in sorted(entries, key=lambda e: e.sequence)]

    def entries(self) -> list[DeferredEntry]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in sorted(self._entries.values(), key=lambda e: e.sequence)
            ]

    def waiting_on(self, identity: str) -> set[EntityKey]:
        """Keys the entry for ``identity`` still needs; empty if not deferred."""
        with self._lock:
            entry = self._entries.get(identity)
            return set(entry.missing) if entry is not None else set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._entries
