"""
Sync engine: state machine, retry policy, per-key locks and orchestration.
"""

from trainee_sync.core.engine.locks import KeyLockRegistry
from trainee_sync.core.engine.models import (
    EngineStats,
    FailureReason,
    InvalidTransitionError,
    NotificationState,
    SyncOutcome,
)
from trainee_sync.core.engine.retry import RetryExhaustedError, RetryPolicy
from trainee_sync.core.engine.service import SyncEngine, SyncListener

__all__ = [
    "EngineStats",
    "FailureReason",
    "InvalidTransitionError",
    "KeyLockRegistry",
    "NotificationState",
    "RetryExhaustedError",
    "RetryPolicy",
    "SyncEngine",
    "SyncListener",
]
