"""
Data models for the deferred queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from trainee_sync.core.config.models import RepairConfig
from trainee_sync.core.entities.models import EntityKey, Notification


class DeferredEntry(BaseModel):
    """
    A notification parked until the keys in ``missing`` are stored.

    ``attempts`` counts re-evaluations that still found dependencies
    missing; the first deferral is attempt 0.
    """

    notification: Notification
    missing: set[EntityKey] = Field(default_factory=set)
    sequence: int = Field(default=0, ge=0, description="Insertion order")
    deferred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = Field(default=0, ge=0)

    @property
    def identity(self) -> str:
        return self.notification.identity

    def age(self, now: datetime) -> timedelta:
        return now - self.deferred_at


@dataclass(frozen=True)
class RepairPolicy:
    """
    When a deferred notification is applied despite missing dependencies.

    Attributes:
        max_attempts: Re-evaluations tolerated; one more makes it due
        max_age: Time in the queue after which it is due
    """

    max_attempts: int = 5
    max_age: timedelta = timedelta(minutes=15)

    @classmethod
    def from_config(cls, config: RepairConfig) -> RepairPolicy:
        return cls(
            max_attempts=config.max_attempts,
            max_age=timedelta(seconds=config.max_age_seconds),
        )

    def is_due(self, entry: DeferredEntry, now: datetime) -> bool:
        return entry.attempts > self.max_attempts or entry.age(now) >= self.max_age
