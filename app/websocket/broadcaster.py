"""Publishes inbox events from synchronous service code.

With ``REDIS_URL`` set, every event goes through the broker and each
process's listener fans it out to its own sockets. While this process's
listener is down, or when the broker rejects the publish, events are also
handed to the local connection manager on its event loop, which is the only
path when no broker is configured. Publishing never raises: a client that
is not connected simply misses the event.
"""

from __future__ import annotations

import asyncio
import json
import threading
from typing import TYPE_CHECKING

import redis

from app.config import settings
from app.logging import get_logger
from app.metrics import REALTIME_PUBLISH
from app.websocket.events import (
    DISPATCH_TOPIC,
    EventType,
    WebSocketEvent,
    conversation_topic,
)
from app.websocket.manager import CHANNEL_PREFIX, get_connection_manager

if TYPE_CHECKING:
    from app.models.inbox import Conversation, Message

logger = get_logger(__name__)

_publisher: redis.Redis | None = None
_publisher_lock = threading.Lock()


def _get_publisher() -> redis.Redis:
    """Process-wide broker connection, created on first publish."""
    global _publisher
    if _publisher is None:
        with _publisher_lock:
            if _publisher is None:
                _publisher = redis.Redis.from_url(settings.redis_url)
    return _publisher


def _publish_to_broker(topic: str, event_data: dict) -> bool:
    try:
        _get_publisher().publish(
            f"{CHANNEL_PREFIX}{topic}",
            json.dumps({"topic": topic, "event": event_data}),
        )
    except redis.RedisError as exc:
        REALTIME_PUBLISH.labels(outcome="error").inc()
        logger.warning("realtime_publish_error topic=%s error=%s", topic, exc)
        return False
    REALTIME_PUBLISH.labels(outcome="published").inc()
    return True


def publish(topic: str, event: WebSocketEvent) -> None:
    event = event.model_copy(update={"topic": topic})
    event_data = event.model_dump(mode="json")

    manager = get_connection_manager()
    if settings.redis_url:
        published = _publish_to_broker(topic, event_data)
        if published and manager.broker_listening:
            return
        # this process's sockets only hear the broker through a live listener
        logger.debug("realtime_publish_local_fallback topic=%s", topic)

    loop = manager.loop
    if loop is None or loop.is_closed():
        REALTIME_PUBLISH.labels(outcome="skipped").inc()
        logger.debug("realtime_publish_skipped topic=%s", topic)
        return
    asyncio.run_coroutine_threadsafe(manager.dispatch(topic, event_data), loop)
    REALTIME_PUBLISH.labels(outcome="local").inc()


def _preview(text: str | None) -> str | None:
    if text and len(text) > 100:
        return text[:100] + "..."
    return text


def broadcast_new_message(message: "Message", conversation: "Conversation"):
    """
    Broadcast a new message to the conversation room and the dispatch room.

    Called after an inbound message is stored and after every operator send.
    """
    data = {
        "message_id": str(message.id),
        "conversation_id": str(conversation.id),
        "platform": conversation.platform.value,
        "direction": message.direction.value,
        "message_type": message.message_type.value,
        "status": message.status.value,
        "body_preview": _preview(message.body),
        "media_ref": message.media_ref,
        "unread_count": conversation.unread_count,
        "lead_id": str(conversation.lead_id) if conversation.lead_id else None,
    }
    publish(conversation_topic(conversation.id), WebSocketEvent(event=EventType.MESSAGE_NEW, data=data))
    publish(DISPATCH_TOPIC, WebSocketEvent(event=EventType.MESSAGE_NEW, data=data))
    logger.debug(
        "broadcast_new_message conversation_id=%s message_id=%s",
        conversation.id,
        message.id,
    )


def broadcast_message_status(message_id, conversation_id, status: str):
    event = WebSocketEvent(
        event=EventType.MESSAGE_STATUS_CHANGED,
        data={
            "message_id": str(message_id),
            "conversation_id": str(conversation_id),
            "status": status,
        },
    )
    publish(conversation_topic(conversation_id), event)
    logger.debug(
        "broadcast_message_status conversation_id=%s message_id=%s status=%s",
        conversation_id,
        message_id,
        status,
    )


def broadcast_conversation_updated(conversation: "Conversation"):
    """Broadcast block flag, lead link and unread counter changes."""
    data = {
        "conversation_id": str(conversation.id),
        "platform": conversation.platform.value,
        "is_blocked": conversation.is_blocked,
        "unread_count": conversation.unread_count,
        "lead_id": str(conversation.lead_id) if conversation.lead_id else None,
    }
    publish(conversation_topic(conversation.id), WebSocketEvent(event=EventType.CONVERSATION_UPDATED, data=data))
    publish(DISPATCH_TOPIC, WebSocketEvent(event=EventType.CONVERSATION_UPDATED, data=data))


def broadcast_lead_updated(conversation: "Conversation", previous_lead_id=None):
    event = WebSocketEvent(
        event=EventType.LEAD_UPDATED,
        data={
            "conversation_id": str(conversation.id),
            "lead_id": str(conversation.lead_id) if conversation.lead_id else None,
            "previous_lead_id": str(previous_lead_id) if previous_lead_id else None,
        },
    )
    publish(DISPATCH_TOPIC, event)
