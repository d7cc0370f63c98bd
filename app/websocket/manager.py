from __future__ import annotations

import asyncio
import json

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from app.config import settings
from app.logging import get_logger
from app.websocket.events import EventType, WebSocketEvent

logger = get_logger(__name__)

CHANNEL_PREFIX = "inbox_ws:"
RECONNECT_MIN_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0


class ConnectionManager:
    """
    Manages realtime connections with Redis pub/sub for horizontal scaling.

    Local connection pool: operator_id -> [WebSocket]
    Topic rooms: topic -> set[WebSocket]
    """

    def __init__(self):
        self._connections: dict[str, list[WebSocket]] = {}
        self._rooms: dict[str, set[WebSocket]] = {}
        self._redis_client = None
        self._pubsub = None
        self._listener_task: asyncio.Task | None = None
        self._running = False
        self._listening = False
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    @property
    def broker_listening(self) -> bool:
        """True while the broker subscription is live and relaying events."""
        return (
            self._listening
            and self._listener_task is not None
            and not self._listener_task.done()
        )

    async def connect(self):
        """Remember the serving loop and start the Redis listener when configured."""
        self._loop = asyncio.get_running_loop()
        if not settings.redis_url:
            logger.info("websocket_manager_local_only")
            return
        self._running = True
        self._listener_task = asyncio.create_task(self._redis_listener())

    async def disconnect(self):
        """Cleanup Redis connection and stop listener."""
        self._running = False
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        await self._close_broker()
        self._loop = None
        logger.info("websocket_manager_disconnected")

    async def _subscribe(self):
        import redis.asyncio as aioredis

        self._redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        self._pubsub = self._redis_client.pubsub()
        await self._pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        self._listening = True
        logger.info("websocket_manager_connected")

    async def _close_broker(self):
        self._listening = False
        pubsub, client = self._pubsub, self._redis_client
        self._pubsub = None
        self._redis_client = None
        try:
            if pubsub:
                await pubsub.punsubscribe()
                await pubsub.close()
            if client:
                await client.close()
        except Exception as exc:
            logger.debug("websocket_manager_close_error error=%s", exc)

    async def _redis_listener(self):
        """Relay broker messages to local connections, resubscribing after failures."""
        delay = RECONNECT_MIN_DELAY
        while self._running:
            try:
                await self._subscribe()
                delay = RECONNECT_MIN_DELAY
                while self._running:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                    if message and message["type"] == "pmessage":
                        await self._handle_redis_message(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "websocket_redis_listener_error retry_in=%s error=%s", delay, exc
                )
                await self._close_broker()
                await asyncio.sleep(delay)
                delay = min(delay * 2, RECONNECT_MAX_DELAY)

    async def _handle_redis_message(self, data: str):
        try:
            payload = json.loads(data)
        except ValueError as exc:
            logger.warning("websocket_redis_message_error error=%s", exc)
            return
        topic = payload.get("topic")
        event_data = payload.get("event")
        if topic and event_data:
            await self.dispatch(topic, event_data)

    async def dispatch(self, topic: str, event_data: dict):
        """Send an event to every local connection that joined ``topic``."""
        for ws in list(self._rooms.get(topic, ())):
            try:
                if ws.client_state == WebSocketState.CONNECTED:
                    await ws.send_json(event_data)
            except Exception as exc:
                logger.debug("websocket_send_failed topic=%s error=%s", topic, exc)
                self._leave_all(ws)

    async def register_connection(self, operator_id: str, websocket: WebSocket):
        """Register a new connection for an operator."""
        self._connections.setdefault(operator_id, []).append(websocket)
        logger.debug("websocket_registered operator_id=%s", operator_id)

        ack_event = WebSocketEvent(
            event=EventType.CONNECTION_ACK,
            data={"operator_id": operator_id, "status": "connected"},
        )
        await websocket.send_json(ack_event.model_dump(mode="json"))

    async def unregister_connection(self, operator_id: str, websocket: WebSocket):
        """Remove a connection and every room membership it held."""
        if operator_id in self._connections:
            if websocket in self._connections[operator_id]:
                self._connections[operator_id].remove(websocket)
            if not self._connections[operator_id]:
                del self._connections[operator_id]
        self._leave_all(websocket)
        logger.debug("websocket_unregistered operator_id=%s", operator_id)

    def _leave_all(self, websocket: WebSocket):
        for topic in list(self._rooms):
            self._rooms[topic].discard(websocket)
            if not self._rooms[topic]:
                del self._rooms[topic]

    async def join(self, websocket: WebSocket, topic: str):
        self._rooms.setdefault(topic, set()).add(websocket)
        event = WebSocketEvent(event=EventType.JOINED, topic=topic, data={"room": topic})
        await websocket.send_json(event.model_dump(mode="json"))

    async def leave(self, websocket: WebSocket, topic: str):
        if topic in self._rooms:
            self._rooms[topic].discard(websocket)
            if not self._rooms[topic]:
                del self._rooms[topic]

    def members(self, topic: str) -> int:
        return len(self._rooms.get(topic, ()))

    async def send_heartbeat(self, websocket: WebSocket):
        heartbeat = WebSocketEvent(event=EventType.HEARTBEAT, data={"status": "ok"})
        await websocket.send_json(heartbeat.model_dump(mode="json"))

    async def send_error(self, websocket: WebSocket, message: str, room: str | None = None):
        error = WebSocketEvent(event=EventType.ERROR, topic=room, data={"message": message})
        await websocket.send_json(error.model_dump(mode="json"))


# Singleton instance
_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Get the singleton ConnectionManager instance."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
