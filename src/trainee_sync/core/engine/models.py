"""
Data models for the sync engine.

Every notification the engine touches gets a :class:`SyncOutcome` that walks
the state machine below. Transitions are checked against a fixed table, so a
bug that skips a step fails loudly instead of acknowledging a message that
was never applied.

::

    received -> resolving -> ready -> applying -> applied -> acknowledged
                          \\-> missing -> deferred -> resolving (on release/sweep)
    any non-terminal state -> failed
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field

from trainee_sync.core.entities.models import EntityKey, Notification, Operation
from trainee_sync.core.store.backend import WriteOutcome


class InvalidTransitionError(Exception):
    """Raised when an outcome is moved along an edge the state machine lacks."""


class NotificationState(str, Enum):
    """Processing state of one notification."""

    RECEIVED = "received"
    RESOLVING = "resolving"
    READY = "ready"
    MISSING = "missing"
    APPLYING = "applying"
    APPLIED = "applied"
    DEFERRED = "deferred"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NotificationState.ACKNOWLEDGED, NotificationState.FAILED)


_S = NotificationState

# missing -> ready is the bounded repair path.
TRANSITIONS: dict[NotificationState, frozenset[NotificationState]] = {
    _S.RECEIVED: frozenset({_S.RESOLVING, _S.FAILED}),
    _S.RESOLVING: frozenset({_S.READY, _S.MISSING, _S.FAILED}),
    _S.READY: frozenset({_S.APPLYING, _S.FAILED}),
    _S.MISSING: frozenset({_S.DEFERRED, _S.READY, _S.FAILED}),
    _S.APPLYING: frozenset({_S.APPLIED, _S.FAILED}),
    _S.APPLIED: frozenset({_S.ACKNOWLEDGED, _S.FAILED}),
    _S.DEFERRED: frozenset({_S.RESOLVING, _S.FAILED}),
    _S.ACKNOWLEDGED: frozenset(),
    _S.FAILED: frozenset(),
}


class FailureReason(str, Enum):
    """Why a notification failed. Carried into dead-letter records."""

    MALFORMED = "malformed"
    EXHAUSTED_RETRIES = "exhausted_retries"
    PERMANENT_ERROR = "permanent_error"


class SyncOutcome(BaseModel):
    """
    What happened to one notification.

    Example:
        >>> outcome = SyncOutcome.start(notification)
        >>> outcome.advance(NotificationState.RESOLVING)
        >>> outcome.state
        <NotificationState.RESOLVING: 'resolving'>
    """

    identity: str
    key: EntityKey
    operation: Operation
    state: NotificationState = NotificationState.RECEIVED
    history: list[NotificationState] = Field(default_factory=list)
    write: WriteOutcome | None = Field(
        default=None,
        description="Store result when the notification was applied",
    )
    redelivery: bool = Field(
        default=False,
        description="Transport redelivery or a write the store already had",
    )
    repaired: bool = Field(
        default=False,
        description="Applied with dependencies still missing",
    )
    cascaded: bool = Field(
        default=False,
        description="Processed because a deferred dependency was released",
    )
    missing: set[EntityKey] = Field(default_factory=set)
    attempts: int = Field(default=0, ge=0, description="Store write attempts")
    error: str | None = None
    reason: FailureReason | None = None

    @classmethod
    def start(cls, notification: Notification) -> SyncOutcome:
        return cls(
            identity=notification.identity,
            key=notification.key,
            operation=notification.operation,
            history=[NotificationState.RECEIVED],
        )

    @classmethod
    def resume(cls, notification: Notification, *, cascaded: bool = False) -> SyncOutcome:
        """Outcome for a notification leaving the deferred queue."""
        return cls(
            identity=notification.identity,
            key=notification.key,
            operation=notification.operation,
            state=NotificationState.DEFERRED,
            history=[NotificationState.DEFERRED],
            cascaded=cascaded,
        )

    def advance(self, state: NotificationState) -> None:
        """
        Move to ``state``.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.identity}: cannot move from {self.state.value} to {state.value}"
            )
        self.state = state
        self.history.append(state)

    @property
    def is_settled(self) -> bool:
        return self.state.is_terminal

    @property
    def acknowledged(self) -> bool:
        return self.state is NotificationState.ACKNOWLEDGED

    @property
    def failed(self) -> bool:
        return self.state is NotificationState.FAILED

    @property
    def deferred(self) -> bool:
        return self.state is NotificationState.DEFERRED


@dataclass
class EngineStats:
    """Running counters since the engine was created."""

    applied: int = 0
    redeliveries: int = 0
    deferred: int = 0
    released: int = 0
    repaired: int = 0
    failed: int = 0
