"""
Deferred queue for notifications waiting on missing dependencies.

Example:
    >>> from trainee_sync.core.deferred import DeferredQueue, RepairPolicy
    >>> queue = DeferredQueue(RepairPolicy(max_attempts=3))
"""

from trainee_sync.core.deferred.models import DeferredEntry, RepairPolicy
from trainee_sync.core.deferred.persistence import DeferredSnapshot, DeferredSnapshotError
from trainee_sync.core.deferred.queue import DeferredQueue

__all__ = [
    "DeferredEntry",
    "DeferredQueue",
    "DeferredSnapshot",
    "DeferredSnapshotError",
    "RepairPolicy",
]
