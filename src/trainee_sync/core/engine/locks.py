"""
Per-key mutual exclusion.

Only one apply may run per EntityKey at a time. Locks are created on demand
and dropped once nobody holds or waits for them, so the registry does not
grow with the number of keys ever seen.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from trainee_sync.core.entities.models import EntityKey

logger = logging.getLogger(__name__)


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class KeyLockRegistry:
    """Reference-counted lock per EntityKey."""

    def __init__(self) -> None:
        self._locks: dict[EntityKey, _KeyLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: EntityKey) -> Iterator[None]:
        """Block until ``key`` is free, then hold it for the with-block."""
        with self._guard:
            entry = self._locks.setdefault(key, _KeyLock())
            entry.refs += 1

        if not entry.lock.acquire(blocking=False):
            logger.debug("Waiting for lock on %s", key)
            entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._locks[key]

    def is_held(self, key: EntityKey) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
