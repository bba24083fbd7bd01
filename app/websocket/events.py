from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class EventType(StrEnum):
    """Events pushed to CRM observers."""

    IMPORT_MESSAGES = "import_messages"
    TICKET_UPDATED = "ticket_updated"
    TICKET_DELETED = "ticket_deleted"
    CONNECTION_DELETED = "connection_deleted"
    CONNECTION_ACK = "connection_ack"
    HEARTBEAT = "heartbeat"


class WebSocketEvent(BaseModel):
    """Outbound event sent to subscribers of a channel.

    ``topic`` is the client-side event name (e.g. ``importMessages-<company>``)
    that front-ends listen on.
    """

    event: EventType
    data: dict[str, Any]
    topic: str | None = None
    timestamp: datetime | None = None

    def model_post_init(self, __context: Any) -> None:
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", datetime.now(UTC))


class InboundMessageType(StrEnum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"


class InboundMessage(BaseModel):
    """Message received from a WebSocket client."""

    type: InboundMessageType
    channel: str | None = None
    data: dict[str, Any] | None = None
