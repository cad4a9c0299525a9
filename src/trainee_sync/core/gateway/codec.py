"""
Decoding of raw transport messages into notifications.

Two JSON shapes are accepted.

Envelope, as produced by tooling and replays::

    {"operation": "update", "kind": "Post", "id": "42",
     "record": {"id": "42", "programmeId": "7"}, "timestamp": "..."}

Upstream change record, as produced by change-data-capture::

    {"data": {"id": "42", "programmeId": "7"},
     "metadata": {"operation": "update", "table-name": "Post",
                  "schema-name": "tcs", "record-type": "data",
                  "timestamp": "..."}}

Control records (``record-type: control``) carry no entity change and decode
to None. Anything else that cannot be turned into a valid notification raises
:class:`MalformedMessageError`.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trainee_sync.core.entities.models import (
    DeliveryMetadata,
    EntityKey,
    EntityKind,
    Notification,
    Operation,
    Record,
)
from trainee_sync.core.entities.registry import EntityModel

from .models import TransportMessage


class MalformedMessageError(Exception):
    """The message can never be processed; retrying will not help."""


class EnvelopeBody(BaseModel):
    operation: str
    kind: str
    id: str | int | None = None
    record: dict[str, Any] | None = None
    timestamp: datetime | None = None
    schema_name: str | None = Field(default=None, alias="schema")

    model_config = ConfigDict(populate_by_name=True)


class ChangeMetadata(BaseModel):
    operation: str
    table_name: str = Field(alias="table-name")
    schema_name: str | None = Field(default=None, alias="schema-name")
    record_type: str = Field(default="data", alias="record-type")
    timestamp: datetime | None = None

    model_config = ConfigDict(populate_by_name=True)


class ChangeBody(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: ChangeMetadata


def _resolve_kind(name: str, entity_model: EntityModel) -> EntityKind:
    kind = entity_model.kind_for_table(name)
    if kind is None:
        raise MalformedMessageError(f"Unknown entity kind '{name}'")
    return kind


def _parse_operation(value: str) -> Operation:
    try:
        return Operation.from_wire(value)
    except ValueError:
        raise MalformedMessageError(f"Unknown operation '{value}'") from None


def _delivery(message: TransportMessage, timestamp: datetime | None) -> DeliveryMetadata:
    return DeliveryMetadata(
        message_id=message.message_id,
        received_at=message.received_at,
        receive_count=message.receive_count,
        timestamp=timestamp,
    )


def _decode_envelope(
    body: EnvelopeBody, message: TransportMessage, entity_model: EntityModel
) -> Notification:
    kind = _resolve_kind(body.kind, entity_model)
    operation = _parse_operation(body.operation)
    natural_id = body.id
    if natural_id is None and body.record is not None:
        natural_id = entity_model.definition_for(kind).natural_id(body.record)
    if natural_id is None or not str(natural_id).strip():
        raise MalformedMessageError(f"{kind.value} message has no id")

    key = EntityKey.of(kind, str(natural_id).strip())
    record = None
    if body.record is not None:
        record = Record(key=key, data=body.record, schema_name=body.schema_name, table=kind.value)
    return Notification(
        operation=operation,
        key=key,
        record=record,
        delivery=_delivery(message, body.timestamp),
    )


def _decode_change(
    body: ChangeBody, message: TransportMessage, entity_model: EntityModel
) -> Notification | None:
    meta = body.metadata
    if meta.record_type.strip().lower() == "control":
        return None

    kind = _resolve_kind(meta.table_name, entity_model)
    operation = _parse_operation(meta.operation)
    key = entity_model.definition_for(kind).key_for(body.data)
    if key is None:
        raise MalformedMessageError(f"{kind.value} change record has no id")

    record = Record(key=key, data=body.data, schema_name=meta.schema_name, table=meta.table_name)
    return Notification(
        operation=operation,
        key=key,
        record=record,
        delivery=_delivery(message, meta.timestamp),
    )


def decode_message(message: TransportMessage, entity_model: EntityModel) -> Notification | None:
    """
    Turn a transport message into a notification.

    Returns:
        The notification, or None for control records

    Raises:
        MalformedMessageError: If the body is not a valid change message
    """
    try:
        payload = json.loads(message.body)
    except json.JSONDecodeError as e:
        raise MalformedMessageError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedMessageError(f"Expected JSON object, got {type(payload).__name__}")

    try:
        if "metadata" in payload:
            return _decode_change(ChangeBody.model_validate(payload), message, entity_model)
        return _decode_envelope(EnvelopeBody.model_validate(payload), message, entity_model)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid message: {e}") from e

