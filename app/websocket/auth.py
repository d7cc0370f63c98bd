from __future__ import annotations

from fastapi import HTTPException, WebSocket

from app.services.auth_flow import decode_access_token, decode_room_token
from app.websocket.events import DISPATCH_TOPIC


def is_valid_room(room: str | None) -> bool:
    if not room:
        return False
    if room == DISPATCH_TOPIC:
        return True
    prefix, _, conversation_id = room.partition(":")
    return prefix == "conversation" and bool(conversation_id)


async def authenticate_websocket(websocket: WebSocket) -> dict | None:
    """
    Authenticate a realtime connection.

    Expects an operator access token in the ``token`` query param.
    Returns {operator_id} if valid, None otherwise (the socket is closed).
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return None
    try:
        payload = decode_access_token(token)
    except HTTPException:
        await websocket.close(code=4001, reason="Invalid token")
        return None
    return {"operator_id": str(payload["sub"])}


def authorize_room(operator_id: str, room: str | None, token: str | None) -> str | None:
    """Return an error message, or None when the operator may join ``room``."""
    if not is_valid_room(room):
        return "Unknown room"
    if not token:
        return "Room token required"
    try:
        decode_room_token(token, room, operator_id)
    except HTTPException as exc:
        return str(exc.detail)
    return None
