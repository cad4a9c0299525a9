"""
Data models for synchronizable entities.

Defines the Pydantic models that flow through the sync pipeline: entity
kinds and keys, record payloads, and the change notifications that carry
them. Notifications and keys are frozen; a record is owned by whichever
pipeline stage is currently processing it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EntityKind(str, Enum):
    """Type of a synchronizable record. Values are upstream table names."""

    PERSON = "Person"
    PROGRAMME = "Programme"
    CURRICULUM = "Curriculum"
    SPECIALTY = "Specialty"
    SITE = "Site"
    GRADE = "Grade"
    TRUST = "Trust"
    POST = "Post"
    PLACEMENT = "Placement"
    PLACEMENT_SPECIALTY = "PlacementSpecialty"
    POST_SPECIALTY = "PostSpecialty"
    PROGRAMME_MEMBERSHIP = "ProgrammeMembership"
    CURRICULUM_MEMBERSHIP = "CurriculumMembership"


class Operation(str, Enum):
    """Change operation carried by a notification."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_wire(cls, value: str) -> Operation:
        """
        Parse an operation name as sent by the upstream system.

        Upstream change-data-capture uses ``insert`` for creates and ``load``
        for bulk (re)loads, which are applied as updates.

        Raises:
            ValueError: If the name is not a known operation
        """
        normalized = value.strip().lower()
        aliases = {"insert": cls.CREATE, "load": cls.UPDATE}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)

    @property
    def is_delete(self) -> bool:
        return self is Operation.DELETE


class EntityKey(BaseModel):
    """
    Identity of one record: its kind plus its natural id.

    Keys are frozen and hashable so they can index the deferred queue,
    the per-key locks and the cache.

    Example:
        >>> key = EntityKey(kind=EntityKind.POST, natural_id="42")
        >>> str(key)
        'Post#42'
    """

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    natural_id: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"{self.kind.value}#{self.natural_id}"

    @classmethod
    def of(cls, kind: EntityKind, natural_id: str | int) -> EntityKey:
        """Shorthand constructor accepting numeric ids."""
        return cls(kind=kind, natural_id=str(natural_id))


class Record(BaseModel):
    """Full payload of one entity as last published upstream."""

    key: EntityKey
    data: dict[str, Any] = Field(default_factory=dict)
    schema_name: str | None = Field(
        default=None,
        description="Upstream schema the record was read from",
    )
    table: str | None = Field(
        default=None,
        description="Upstream table identifier",
    )


class DeliveryMetadata(BaseModel):
    """Transport-level facts about one delivery of a notification."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(min_length=1)
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    receive_count: int = Field(
        default=1,
        ge=1,
        description="How many times the transport has delivered this message",
    )
    timestamp: datetime | None = Field(
        default=None,
        description="Upstream change time, when the producer supplies one",
    )

    @field_validator("received_at", "timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Naive and aware datetimes cannot be compared; treat naive as UTC.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def version(self) -> datetime:
        """Timestamp compared against the store's last-applied time."""
        return self.timestamp or self.received_at

    @property
    def is_redelivery(self) -> bool:
        return self.receive_count > 1


class Notification(BaseModel):
    """
    One change event for a single entity record.

    The record payload is required for creates and updates and ignored for
    deletes. Identity is the transport message id, so a redelivered message
    supersedes rather than duplicates any deferred copy of itself.
    """

    model_config = ConfigDict(frozen=True)

    operation: Operation
    key: EntityKey
    record: Record | None = None
    delivery: DeliveryMetadata

    @model_validator(mode="after")
    def _check_payload(self) -> Notification:
        if self.operation.is_delete:
            return self
        if self.record is None:
            raise ValueError(f"{self.operation.value} notification for {self.key} has no record")
        if self.record.key != self.key:
            raise ValueError(
                f"record key {self.record.key} does not match notification key {self.key}"
            )
        return self

    @property
    def identity(self) -> str:
        return self.delivery.message_id

    def describe(self) -> str:
        """Short human-readable form used in log lines."""
        return f"{self.operation.value} {self.key} [{self.identity}]"
