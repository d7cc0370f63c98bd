from __future__ import annotations

from fastapi import Header, HTTPException, Request

from app.services.auth_flow import decode_access_token


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_operator(
    authorization: str | None = Header(default=None),
    request: Request = None,
):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_access_token(token)
    operator_id = str(payload["sub"])
    if request is not None:
        request.state.actor_id = operator_id
        request.state.actor_type = "operator"
    return {"operator_id": operator_id}
