"""
Data models for inbound messages and their handling.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from trainee_sync.core.engine.models import FailureReason, SyncOutcome


class TransportMessage(BaseModel):
    """One delivery of a raw message from the queue."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(min_length=1)
    body: str
    receive_count: int = Field(default=1, ge=1)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeadLetter(BaseModel):
    """A message routed to the dead-letter destination, with the reason why."""

    message: TransportMessage
    reason: FailureReason
    error: str
    dead_lettered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class GatewayAction(str, Enum):
    """What the gateway did with a message."""

    ACKNOWLEDGED = "acknowledged"
    DEFERRED = "deferred"
    RELEASED = "released"
    DEAD_LETTERED = "dead_lettered"


class GatewayResult(BaseModel):
    """Result of handling one message."""

    message_id: str
    action: GatewayAction
    outcome: SyncOutcome | None = Field(
        default=None,
        description="Engine outcome; None for malformed and control messages",
    )
    error: str | None = None
