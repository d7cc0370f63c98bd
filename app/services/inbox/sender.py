"""Outbound sends: internal requests -> vendor send API payloads.

Sends are never retried here. A retried send that actually reached the
vendor the first time would deliver the message to the contact twice.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from app.logging import get_logger
from app.models.inbox import Conversation, MessageType, Platform
from app.services.inbox import meta_graph, transcode
from app.services.inbox.errors import SendFailed

logger = get_logger(__name__)

# Messenger/Instagram attachment types
_META_ATTACHMENT = {
    MessageType.image: "image",
    MessageType.sticker: "image",
    MessageType.video: "video",
    MessageType.audio: "audio",
    MessageType.document: "file",
}

_WHATSAPP_MEDIA = {
    MessageType.image: "image",
    MessageType.sticker: "sticker",
    MessageType.video: "video",
    MessageType.audio: "audio",
    MessageType.document: "document",
}


class OutboundMedia(BaseModel):
    """Media to send: a public URL, or raw bytes to upload first (WhatsApp)."""

    kind: MessageType
    url: str | None = None
    content: bytes | None = None
    filename: str | None = None
    mime_type: str | None = None
    caption: str | None = None


class SentMedia(BaseModel):
    vendor_message_id: str
    media_ref: str
    mime_type: str | None = None
    voice: bool = False


def media_kind_for_mime(mime_type: str | None) -> MessageType:
    """Pick the message type for an uploaded file."""
    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    if mime == "image/webp":
        return MessageType.sticker
    if mime.startswith("image/"):
        return MessageType.image
    if mime.startswith("video/"):
        return MessageType.video
    if mime.startswith("audio/"):
        return MessageType.audio
    return MessageType.document


def _meta_envelope(conversation: Conversation, message: dict[str, Any]) -> dict[str, Any]:
    return {
        "recipient": {"id": conversation.external_user_id},
        "messaging_type": "RESPONSE",
        "message": message,
    }


def _whatsapp_envelope(conversation: Conversation, kind: str, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": conversation.external_user_id,
        "type": kind,
        kind: body,
    }


def send_text(conversation: Conversation, text: str) -> str:
    if not text or not text.strip():
        raise SendFailed("Message text is empty")
    if conversation.platform == Platform.whatsapp:
        payload = _whatsapp_envelope(
            conversation, "text", {"preview_url": False, "body": text}
        )
    else:
        payload = _meta_envelope(conversation, {"text": text})
    return meta_graph.post_message(conversation.platform, payload)


def send_media(conversation: Conversation, media: OutboundMedia) -> SentMedia:
    """Send one media message, uploading (and transcoding audio) where needed.

    Raises:
        TranscodeFailed: audio could not be converted; nothing was sent
        SendFailed: the vendor refused the upload or the send
    """
    if conversation.platform == Platform.whatsapp:
        return _send_whatsapp_media(conversation, media)

    if not media.url:
        raise SendFailed(
            f"{conversation.platform.value} media must be sent by public URL"
        )
    attachment_type = _META_ATTACHMENT.get(media.kind)
    if attachment_type is None:
        raise SendFailed(f"Unsupported media kind: {media.kind.value}")
    payload = _meta_envelope(
        conversation,
        {
            "attachment": {
                "type": attachment_type,
                "payload": {"url": media.url, "is_reusable": True},
            }
        },
    )
    vendor_id = meta_graph.post_message(conversation.platform, payload)
    return SentMedia(vendor_message_id=vendor_id, media_ref=media.url, mime_type=media.mime_type)


def _send_whatsapp_media(conversation: Conversation, media: OutboundMedia) -> SentMedia:
    kind = _WHATSAPP_MEDIA.get(media.kind)
    if kind is None:
        raise SendFailed(f"Unsupported media kind: {media.kind.value}")

    voice = False
    mime_type = media.mime_type
    if media.content is not None:
        content = media.content
        filename = media.filename or "upload"
        if media.kind == MessageType.audio:
            if not transcode.is_ogg_opus(mime_type):
                content = transcode.transcode_to_ogg_opus(content, filename)
                filename = filename.rsplit(".", 1)[0] + ".ogg"
            mime_type = transcode.OGG_OPUS_MIME
            voice = True
        media_ref = meta_graph.upload_whatsapp_media(
            content, filename, mime_type or "application/octet-stream"
        )
        body: dict[str, Any] = {"id": media_ref}
    elif media.url:
        media_ref = media.url
        body = {"link": media.url}
    else:
        raise SendFailed("Media content or URL is required")

    if media.caption and kind in ("image", "video", "document"):
        body["caption"] = media.caption
    if kind == "document" and media.filename:
        body["filename"] = media.filename
    if voice:
        body["voice"] = True

    vendor_id = meta_graph.post_message(
        Platform.whatsapp, _whatsapp_envelope(conversation, kind, body)
    )
    return SentMedia(
        vendor_message_id=vendor_id, media_ref=media_ref, mime_type=mime_type, voice=voice
    )


def send_location(
    conversation: Conversation,
    latitude: float,
    longitude: float,
    name: str | None = None,
    address: str | None = None,
) -> str:
    if conversation.platform != Platform.whatsapp:
        raise SendFailed(f"Location messages are not supported on {conversation.platform.value}")
    body: dict[str, Any] = {"latitude": latitude, "longitude": longitude}
    if name:
        body["name"] = name
    if address:
        body["address"] = address
    return meta_graph.post_message(
        Platform.whatsapp, _whatsapp_envelope(conversation, "location", body)
    )


def send_template(
    conversation: Conversation,
    template_name: str,
    language_code: str,
    components: list[dict[str, Any]] | None = None,
) -> str:
    if conversation.platform != Platform.whatsapp:
        raise SendFailed(f"Template messages are not supported on {conversation.platform.value}")
    template: dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
    if components:
        template["components"] = components
    return meta_graph.post_message(
        Platform.whatsapp, _whatsapp_envelope(conversation, "template", template)
    )
