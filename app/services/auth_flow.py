"""Operator and realtime room tokens.

Operator sessions are issued elsewhere; this module only verifies operator
access tokens and issues the short-lived room tokens the realtime channel
requires before a client may join a topic.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, cast

from fastapi import HTTPException
from jose import JWTError, jwt

from app.config import settings

ACCESS_TTL_MINUTES = 15


def _now() -> datetime:
    return datetime.now(UTC)


def _jwt_secret() -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    return settings.jwt_secret


def _jwt_algorithm() -> str:
    return settings.jwt_algorithm or "HS256"


def issue_access_token(operator_id: str, ttl_minutes: int = ACCESS_TTL_MINUTES) -> str:
    now = _now()
    payload = {
        "sub": operator_id,
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return cast(str, jwt.encode(payload, _jwt_secret(), algorithm=_jwt_algorithm()))


def issue_room_token(operator_id: str, room: str) -> tuple[str, int]:
    """Return a token allowing ``operator_id`` to join ``room``, and its TTL."""
    ttl = settings.room_token_ttl_seconds
    now = _now()
    payload = {
        "sub": operator_id,
        "room": room,
        "typ": "room",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl)).timestamp()),
    }
    token = cast(str, jwt.encode(payload, _jwt_secret(), algorithm=_jwt_algorithm()))
    return token, ttl


def _decode_jwt(token: str, expected_type: str) -> dict:
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, _jwt_secret(), algorithms=[_jwt_algorithm()]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("typ") != expected_type:
        raise HTTPException(status_code=401, detail="Invalid token type")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def decode_access_token(token: str) -> dict:
    return _decode_jwt(token, "access")


def decode_room_token(token: str, room: str, operator_id: str) -> dict:
    payload = _decode_jwt(token, "room")
    if payload.get("room") != room or str(payload.get("sub")) != str(operator_id):
        raise HTTPException(status_code=403, detail="Room token does not match")
    return payload
