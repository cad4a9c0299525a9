"""
Inbound gateway: transport contract, wire codec, message handling and the
worker pool.
"""

from trainee_sync.core.gateway.codec import MalformedMessageError, decode_message
from trainee_sync.core.gateway.models import (
    DeadLetter,
    GatewayAction,
    GatewayResult,
    TransportMessage,
)
from trainee_sync.core.gateway.pool import PoolSummary, WorkerPool
from trainee_sync.core.gateway.service import InboundGateway
from trainee_sync.core.gateway.transport import (
    InMemoryTransport,
    Transport,
    TransportError,
    load_messages,
    write_dead_letters,
)

__all__ = [
    "DeadLetter",
    "GatewayAction",
    "GatewayResult",
    "InMemoryTransport",
    "InboundGateway",
    "MalformedMessageError",
    "PoolSummary",
    "Transport",
    "TransportError",
    "TransportMessage",
    "WorkerPool",
    "decode_message",
    "load_messages",
    "write_dead_letters",
]
