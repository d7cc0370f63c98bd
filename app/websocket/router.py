from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.logging import get_logger
from app.websocket.auth import authenticate_websocket, authorize_room
from app.websocket.events import InboundMessage, InboundMessageType
from app.websocket.manager import ConnectionManager, get_connection_manager

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/inbox")
async def inbox_websocket(websocket: WebSocket):
    """
    Realtime channel for inbox updates.

    Client actions:
    - join: join a room (``dispatch`` or ``conversation:<id>``) with a room token
    - leave: leave a room
    - ping: keep-alive ping
    """
    await websocket.accept()

    auth_result = await authenticate_websocket(websocket)
    if not auth_result:
        return

    operator_id = auth_result["operator_id"]
    manager = get_connection_manager()
    await manager.register_connection(operator_id, websocket)

    try:
        while True:
            data = await websocket.receive_text()
            await _handle_client_message(operator_id, websocket, data, manager)
    except WebSocketDisconnect:
        logger.debug("websocket_disconnected operator_id=%s", operator_id)
    finally:
        await manager.unregister_connection(operator_id, websocket)


async def _handle_client_message(
    operator_id: str, websocket: WebSocket, raw_data: str, manager: ConnectionManager
):
    """Process one client message."""
    try:
        message = InboundMessage(**json.loads(raw_data))
    except (ValueError, TypeError, ValidationError):
        logger.warning("websocket_invalid_message operator_id=%s", operator_id)
        await manager.send_error(websocket, "Invalid message")
        return

    if message.type == InboundMessageType.JOIN:
        error = authorize_room(operator_id, message.room, message.token)
        if error:
            logger.info(
                "websocket_join_denied operator_id=%s room=%s reason=%s",
                operator_id,
                message.room,
                error,
            )
            await manager.send_error(websocket, error, room=message.room)
            return
        await manager.join(websocket, message.room)

    elif message.type == InboundMessageType.LEAVE:
        if message.room:
            await manager.leave(websocket, message.room)

    elif message.type == InboundMessageType.PING:
        await manager.send_heartbeat(websocket)
