from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

DISPATCH_TOPIC = "dispatch"


def conversation_topic(conversation_id) -> str:
    return f"conversation:{conversation_id}"


class EventType(str, Enum):
    """Realtime event types for the inbox."""

    MESSAGE_NEW = "message_new"
    MESSAGE_STATUS_CHANGED = "message_status_changed"
    CONVERSATION_UPDATED = "conversation_updated"
    LEAD_UPDATED = "lead_updated"
    CONNECTION_ACK = "connection_ack"
    JOINED = "joined"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class WebSocketEvent(BaseModel):
    """Outbound event sent to clients."""

    event: EventType
    data: dict[str, Any]
    topic: str | None = None
    timestamp: datetime | None = None

    def model_post_init(self, __context: Any) -> None:
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", datetime.now(UTC))


class InboundMessageType(str, Enum):
    """Types of messages clients can send."""

    JOIN = "join"
    LEAVE = "leave"
    PING = "ping"


class InboundMessage(BaseModel):
    """Message received from a client. ``join`` needs a room token."""

    type: InboundMessageType
    room: str | None = None
    token: str | None = None
