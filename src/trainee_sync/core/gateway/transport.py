"""
Transport contract and an in-memory implementation.

The transport is at-least-once: a received message stays in flight until it
is acknowledged, released for redelivery or dead-lettered. Each redelivery
increments ``receive_count``.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from .models import DeadLetter, TransportMessage

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The transport rejected an operation."""


@runtime_checkable
class Transport(Protocol):
    """Inbound queue as seen by the gateway."""

    def receive(self, max_messages: int = 10, wait_seconds: float = 0.0) -> list[TransportMessage]:
        """Take up to ``max_messages`` ready messages, waiting if none are ready."""
        ...

    def ack(self, message: TransportMessage) -> None:
        """Remove a processed message permanently."""
        ...

    def release(self, message: TransportMessage) -> None:
        """Return a message for redelivery."""
        ...

    def dead_letter(self, letter: DeadLetter) -> None:
        """Move a message to the dead-letter destination."""
        ...


class InMemoryTransport:
    """
    Queue held in process memory. Used by replays and tests.

    Example:
        >>> transport = InMemoryTransport()
        >>> transport.send('{"operation": "create", "kind": "Programme", "id": "7"}')
        >>> [m.receive_count for m in transport.receive()]
        [1]
    """

    def __init__(self) -> None:
        self._ready: deque[TransportMessage] = deque()
        self._in_flight: dict[str, TransportMessage] = {}
        self._dead_letters: list[DeadLetter] = []
        self._acked: list[str] = []
        self._cond = threading.Condition()

    def send(self, body: str, message_id: str | None = None) -> TransportMessage:
        """Enqueue a new message body."""
        message = TransportMessage(message_id=message_id or str(uuid.uuid4()), body=body)
        self.put(message)
        return message

    def put(self, message: TransportMessage) -> None:
        """Enqueue an existing message as-is, e.g. one loaded from a file."""
        with self._cond:
            self._ready.append(message)
            self._cond.notify()

    def receive(self, max_messages: int = 10, wait_seconds: float = 0.0) -> list[TransportMessage]:
        with self._cond:
            if not self._ready and wait_seconds > 0:
                self._cond.wait(timeout=wait_seconds)
            batch = []
            while self._ready and len(batch) < max_messages:
                message = self._ready.popleft()
                self._in_flight[message.message_id] = message
                batch.append(message)
            return batch

    def _take(self, message: TransportMessage) -> TransportMessage:
        current = self._in_flight.pop(message.message_id, None)
        if current is None:
            raise TransportError(f"Message {message.message_id} is not in flight")
        return current

    def ack(self, message: TransportMessage) -> None:
        with self._cond:
            self._take(message)
            self._acked.append(message.message_id)

    def release(self, message: TransportMessage) -> None:
        with self._cond:
            current = self._take(message)
            self._ready.append(current.model_copy(update={"receive_count": current.receive_count + 1}))
            self._cond.notify()

    def dead_letter(self, letter: DeadLetter) -> None:
        with self._cond:
            self._take(letter.message)
            self._dead_letters.append(letter)

    def redeliver_in_flight(self) -> int:
        """
        Return every in-flight message for redelivery, as the queue does when
        a consumer stops without acknowledging.
        """
        with self._cond:
            messages = list(self._in_flight.values())
            self._in_flight.clear()
            for message in messages:
                self._ready.append(
                    message.model_copy(update={"receive_count": message.receive_count + 1})
                )
            self._cond.notify_all()
        return len(messages)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        with self._cond:
            return list(self._dead_letters)

    @property
    def acknowledged(self) -> list[str]:
        with self._cond:
            return list(self._acked)

    @property
    def ready_count(self) -> int:
        with self._cond:
            return len(self._ready)

    @property
    def in_flight_count(self) -> int:
        with self._cond:
            return len(self._in_flight)


def load_messages(path: Path) -> list[TransportMessage]:
    """
    Read messages from a JSONL file.

    Each line is either a serialized :class:`TransportMessage` (an object
    with a ``body`` field) or a bare message body, which gets an id derived
    from the file name and line number. Lines that are not JSON are kept as
    raw bodies so they can be dead-lettered like any other bad input.
    """
    messages = []
    with path.open(encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            message_id = f"{path.stem}-{line_num}"
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Line %d of %s is not JSON, keeping as raw body", line_num, path)
                messages.append(TransportMessage(message_id=message_id, body=line))
                continue
            if isinstance(data, dict) and isinstance(data.get("body"), str):
                try:
                    messages.append(TransportMessage.model_validate({"message_id": message_id, **data}))
                    continue
                except ValidationError as e:
                    logger.warning("Line %d of %s is not a valid message: %s", line_num, path, e)
            messages.append(TransportMessage(message_id=message_id, body=line))
    return messages


def write_dead_letters(path: Path, letters: list[DeadLetter]) -> int:
    """Append dead letters to a JSONL file. Returns the number written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        for letter in letters:
            f.write(letter.model_dump_json())
            f.write("\n")
    return len(letters)
