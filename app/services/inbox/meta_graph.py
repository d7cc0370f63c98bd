"""Meta Graph API calls used by the inbox.

Messenger and Instagram use the page access token as a query parameter on
``/me/messages``; WhatsApp Cloud API uses a bearer token on
``/{phone_number_id}/...``. Every call is bounded by ``META_HTTP_TIMEOUT``.
"""

from __future__ import annotations

from typing import Any

import httpx

from app.config import settings
from app.logging import get_logger
from app.models.inbox import Platform
from app.services.inbox.errors import SendFailed

logger = get_logger(__name__)

_PROFILE_FIELDS = {
    Platform.messenger: "first_name,last_name,profile_pic",
    Platform.instagram: "name,username,profile_pic",
}


def _base_url() -> str:
    return settings.meta_graph_base_url.rstrip("/")


def _build_client() -> httpx.Client:
    return httpx.Client(timeout=settings.meta_http_timeout)


def _whatsapp_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {settings.whatsapp_access_token}"}


def _vendor_error(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        details = (error.get("error_data") or {}).get("details")
        message = error.get("message") or f"HTTP {response.status_code}"
        return f"{message} ({details})" if details else message
    return f"HTTP {response.status_code}"


def _mask(value: str | None) -> str:
    if not value:
        return ""
    return value[:6] + "..."


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def fetch_profile(platform: Platform, user_id: str) -> dict[str, str | None]:
    """Best-effort contact profile lookup; returns an empty dict on any failure."""
    fields = _PROFILE_FIELDS.get(platform)
    access_token = settings.access_token_for(platform.value)
    if not fields or not access_token:
        return {}
    try:
        with _build_client() as client:
            response = client.get(
                f"{_base_url()}/{user_id}",
                params={"fields": fields, "access_token": access_token},
            )
        if response.status_code >= 400:
            if response.status_code in (401, 403):
                logger.warning(
                    "meta_profile_lookup_auth_failed platform=%s user_id=%s status=%s body=%s",
                    platform.value,
                    user_id,
                    response.status_code,
                    response.text[:500],
                )
            else:
                logger.debug(
                    "meta_profile_lookup_failed platform=%s user_id=%s status=%s",
                    platform.value,
                    user_id,
                    response.status_code,
                )
            return {}
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning(
            "meta_profile_lookup_exception platform=%s user_id=%s error=%s",
            platform.value,
            user_id,
            exc,
        )
        return {}

    if platform == Platform.instagram:
        name = data.get("name")
    else:
        name = " ".join(p for p in (data.get("first_name"), data.get("last_name")) if p)
    return {
        "name": name or None,
        "username": data.get("username") or None,
        "avatar_url": data.get("profile_pic") or None,
    }


# ---------------------------------------------------------------------------
# Sends
# ---------------------------------------------------------------------------


def post_message(platform: Platform, payload: dict[str, Any]) -> str:
    """POST a send payload and return the vendor-assigned message id.

    Raises:
        SendFailed: non-2xx response, missing credentials, or transport error
    """
    access_token = settings.access_token_for(platform.value)
    if not access_token:
        raise SendFailed(f"No access token configured for {platform.value}")

    if platform == Platform.whatsapp:
        if not settings.whatsapp_phone_number_id:
            raise SendFailed("WHATSAPP_PHONE_NUMBER_ID is not configured")
        url = f"{_base_url()}/{settings.whatsapp_phone_number_id}/messages"
        request_kwargs: dict[str, Any] = {"headers": _whatsapp_headers()}
    else:
        url = f"{_base_url()}/me/messages"
        request_kwargs = {"params": {"access_token": access_token}}

    try:
        with _build_client() as client:
            response = client.post(url, json=payload, **request_kwargs)
    except httpx.HTTPError as exc:
        logger.error("meta_send_transport_error platform=%s error=%s", platform.value, exc)
        raise SendFailed("Messaging provider is unreachable") from exc

    if response.status_code >= 400:
        vendor_error = _vendor_error(response)
        logger.error(
            "meta_send_failed platform=%s recipient=%s status=%s body=%s",
            platform.value,
            _mask(_recipient_of(payload)),
            response.status_code,
            response.text[:500],
        )
        raise SendFailed(
            vendor_error, vendor_error=vendor_error, vendor_status=response.status_code
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise SendFailed("Messaging provider returned an unreadable response") from exc

    if not isinstance(data, dict):
        raise SendFailed("Messaging provider returned an unexpected response")
    if platform == Platform.whatsapp:
        messages = data.get("messages")
        first = messages[0] if isinstance(messages, list) and messages else None
        vendor_id = first.get("id") if isinstance(first, dict) else None
    else:
        vendor_id = data.get("message_id")
    if not vendor_id or not isinstance(vendor_id, str):
        raise SendFailed("Messaging provider did not return a message id")

    logger.info(
        "meta_message_sent platform=%s recipient=%s vendor_message_id=%s",
        platform.value,
        _mask(_recipient_of(payload)),
        vendor_id,
    )
    return vendor_id


def _recipient_of(payload: dict[str, Any]) -> str | None:
    if "to" in payload:
        return payload.get("to")
    return (payload.get("recipient") or {}).get("id")


def upload_whatsapp_media(content: bytes, filename: str, mime_type: str) -> str:
    """Upload bytes to the WhatsApp media endpoint and return the media id."""
    if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
        raise SendFailed("WhatsApp credentials are not configured")
    url = f"{_base_url()}/{settings.whatsapp_phone_number_id}/media"
    try:
        with _build_client() as client:
            response = client.post(
                url,
                headers=_whatsapp_headers(),
                data={"messaging_product": "whatsapp", "type": mime_type},
                files={"file": (filename, content, mime_type)},
            )
    except httpx.HTTPError as exc:
        logger.error("whatsapp_media_upload_transport_error error=%s", exc)
        raise SendFailed("Messaging provider is unreachable") from exc

    if response.status_code >= 400:
        vendor_error = _vendor_error(response)
        logger.error(
            "whatsapp_media_upload_failed status=%s mime_type=%s body=%s",
            response.status_code,
            mime_type,
            response.text[:500],
        )
        raise SendFailed(
            vendor_error, vendor_error=vendor_error, vendor_status=response.status_code
        )
    try:
        media_id = response.json().get("id")
    except ValueError:
        media_id = None
    if not media_id:
        raise SendFailed("Messaging provider did not return a media id")
    logger.info("whatsapp_media_uploaded media_id=%s mime_type=%s", media_id, mime_type)
    return media_id


def list_whatsapp_templates() -> list[dict[str, Any]]:
    """Approved message templates of the configured business account."""
    if not settings.whatsapp_access_token or not settings.whatsapp_waba_id:
        raise SendFailed("WhatsApp business account is not configured")
    try:
        with _build_client() as client:
            response = client.get(
                f"{_base_url()}/{settings.whatsapp_waba_id}/message_templates",
                headers=_whatsapp_headers(),
                params={"status": "APPROVED", "limit": 100},
            )
    except httpx.HTTPError as exc:
        raise SendFailed("Messaging provider is unreachable") from exc
    if response.status_code >= 400:
        vendor_error = _vendor_error(response)
        logger.error(
            "whatsapp_templates_fetch_failed status=%s body=%s",
            response.status_code,
            response.text[:500],
        )
        raise SendFailed(
            vendor_error, vendor_error=vendor_error, vendor_status=response.status_code
        )
    try:
        return list(response.json().get("data") or [])
    except ValueError as exc:
        raise SendFailed("Messaging provider returned an unreadable response") from exc


def mark_seen(platform: Platform, external_user_id: str, vendor_message_id: str | None) -> None:
    """Tell the vendor an inbound message was seen. Never raises."""
    access_token = settings.access_token_for(platform.value)
    if not access_token:
        return
    if platform == Platform.whatsapp:
        if not vendor_message_id or not settings.whatsapp_phone_number_id:
            return
        url = f"{_base_url()}/{settings.whatsapp_phone_number_id}/messages"
        kwargs: dict[str, Any] = {
            "headers": _whatsapp_headers(),
            "json": {
                "messaging_product": "whatsapp",
                "status": "read",
                "message_id": vendor_message_id,
            },
        }
    else:
        url = f"{_base_url()}/me/messages"
        kwargs = {
            "params": {"access_token": access_token},
            "json": {"recipient": {"id": external_user_id}, "sender_action": "mark_seen"},
        }
    try:
        with _build_client() as client:
            response = client.post(url, **kwargs)
        if response.status_code >= 400:
            logger.info(
                "meta_mark_seen_failed platform=%s status=%s",
                platform.value,
                response.status_code,
            )
    except httpx.HTTPError as exc:
        logger.info("meta_mark_seen_exception platform=%s error=%s", platform.value, exc)
