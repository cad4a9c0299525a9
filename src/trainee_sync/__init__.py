"""
trainee-sync - dependency-ordered synchronization of upstream entity changes.

Consumes create/update/delete notifications, defers those whose referenced
records are not stored yet, applies them idempotently and releases whatever
was waiting on them.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from trainee_sync.core.config.models import SyncConfig
from trainee_sync.core.engine import NotificationState, SyncEngine, SyncOutcome
from trainee_sync.core.entities import EntityKey, EntityKind, Notification, Operation, Record

__all__ = [
    "EntityKey",
    "EntityKind",
    "Notification",
    "NotificationState",
    "Operation",
    "Record",
    "SyncConfig",
    "SyncEngine",
    "SyncOutcome",
    "__version__",
]
