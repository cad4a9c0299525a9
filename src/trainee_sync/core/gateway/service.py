"""
Inbound gateway: decode, hand to the engine, settle with the transport.

A message is acknowledged only once the engine has applied it, and
dead-lettered or released only once it has failed. Deferred messages stay
in flight; the gateway remembers them and settles them when the engine
reports the notification settled (after a cascade or a sweep). A crash
therefore leaves unfinished messages on the transport for redelivery.
"""

from __future__ import annotations

import logging
import threading

from trainee_sync.core.engine.models import FailureReason, SyncOutcome
from trainee_sync.core.engine.service import SyncEngine
from trainee_sync.core.entities.models import Notification
from trainee_sync.core.entities.registry import EntityModel

from .codec import MalformedMessageError, decode_message
from .models import DeadLetter, GatewayAction, GatewayResult, TransportMessage
from .transport import Transport

logger = logging.getLogger(__name__)


class InboundGateway:
    """
    Bridges a transport and the sync engine.

    Args:
        engine: Engine that processes decoded notifications
        transport: Source of messages and sink for acks and dead letters
        entity_model: Used to decode message kinds and ids
        max_receive_count: Deliveries allowed before a failing message is
            dead-lettered instead of released
    """

    def __init__(
        self,
        engine: SyncEngine,
        transport: Transport,
        entity_model: EntityModel,
        *,
        max_receive_count: int = 5,
    ) -> None:
        self.engine = engine
        self.transport = transport
        self.entity_model = entity_model
        self.max_receive_count = max_receive_count
        self._pending: dict[str, TransportMessage] = {}
        # Outcomes settled by a cascade while their own ingest call is running.
        self._settled_inline: dict[str, SyncOutcome | None] = {}
        self._lock = threading.Lock()
        engine.add_listener(self)

    @property
    def pending_count(self) -> int:
        """Messages held unacknowledged while their notification is deferred."""
        with self._lock:
            return len(self._pending)

    def handle(self, message: TransportMessage) -> GatewayResult:
        """Process one message end to end."""
        try:
            notification = decode_message(message, self.entity_model)
        except MalformedMessageError as e:
            self._dead_letter(message, FailureReason.MALFORMED, str(e))
            return GatewayResult(
                message_id=message.message_id,
                action=GatewayAction.DEAD_LETTERED,
                error=str(e),
            )

        if notification is None:
            logger.debug("Acknowledging control message %s", message.message_id)
            self.transport.ack(message)
            return GatewayResult(message_id=message.message_id, action=GatewayAction.ACKNOWLEDGED)

        identity = notification.identity
        with self._lock:
            self._pending[identity] = message
            self._settled_inline[identity] = None

        try:
            outcome = self.engine.ingest(notification)
        except Exception:
            with self._lock:
                self._pending.pop(identity, None)
                self._settled_inline.pop(identity, None)
            raise
        with self._lock:
            settled = self._settled_inline.pop(identity, None)
        if not outcome.is_settled and settled is not None:
            outcome = settled

        if outcome.acknowledged:
            action = GatewayAction.ACKNOWLEDGED
        elif outcome.failed:
            action = self._failure_action(message)
        else:
            action = GatewayAction.DEFERRED
        return GatewayResult(
            message_id=message.message_id,
            action=action,
            outcome=outcome,
            error=outcome.error,
        )

    def on_settled(self, notification: Notification, outcome: SyncOutcome) -> None:
        """Engine callback: settle the message carrying ``notification``."""
        with self._lock:
            message = self._pending.pop(notification.identity, None)
            if notification.identity in self._settled_inline:
                self._settled_inline[notification.identity] = outcome
        if message is None:
            return
        if outcome.acknowledged:
            self.transport.ack(message)
            return
        if self._failure_action(message) is GatewayAction.RELEASED:
            logger.warning(
                "Releasing %s for redelivery (receive %d of %d)",
                message.message_id,
                message.receive_count,
                self.max_receive_count,
            )
            self.transport.release(message)
        else:
            self._dead_letter(
                message,
                outcome.reason or FailureReason.PERMANENT_ERROR,
                outcome.error or "failed",
            )

    def _failure_action(self, message: TransportMessage) -> GatewayAction:
        if message.receive_count < self.max_receive_count:
            return GatewayAction.RELEASED
        return GatewayAction.DEAD_LETTERED

    def _dead_letter(self, message: TransportMessage, reason: FailureReason, error: str) -> None:
        logger.error("Dead-lettering %s (%s): %s", message.message_id, reason.value, error)
        self.transport.dead_letter(DeadLetter(message=message, reason=reason, error=error))
