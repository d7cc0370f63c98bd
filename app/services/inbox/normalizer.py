"""Vendor webhook payloads -> normalized inbox events.

Each ``normalize_*`` function is a generator over one webhook body. It keeps
no state between calls, and malformed or unrecognized items are logged and
skipped rather than raised.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from app.logging import get_logger
from app.models.inbox import MessageType, Platform
from app.schemas.inbox import (
    MetaMessagingEvent,
    MetaWebhookChange,
    MetaWebhookEntry,
    MetaWebhookPayload,
    WhatsAppChangeValue,
)

logger = get_logger(__name__)

# Meta's ``object`` discriminator -> platform
OBJECT_PLATFORMS = {
    "page": Platform.messenger,
    "instagram": Platform.instagram,
    "whatsapp_business_account": Platform.whatsapp,
}

_ATTACHMENT_TYPES = {
    "image": MessageType.image,
    "video": MessageType.video,
    "audio": MessageType.audio,
    "file": MessageType.document,
}

_WHATSAPP_MEDIA_TYPES = {
    "image": MessageType.image,
    "video": MessageType.video,
    "audio": MessageType.audio,
    "document": MessageType.document,
    "sticker": MessageType.sticker,
}


class MediaDescriptor(BaseModel):
    """Stable pointer to vendor media: a media id (WhatsApp) or CDN URL."""

    ref: str
    mime_type: str | None = None
    caption: str | None = None
    filename: str | None = None


class LocationDescriptor(BaseModel):
    latitude: float
    longitude: float
    name: str | None = None
    address: str | None = None

    def as_text(self) -> str:
        text = f"{self.latitude},{self.longitude}"
        if self.name:
            text = f"{text} - {self.name}"
        return text


class MessageReceived(BaseModel):
    kind: Literal["message"] = "message"
    platform: Platform
    external_user_id: str
    vendor_message_id: str
    timestamp: datetime
    message_type: MessageType = MessageType.text
    text: str | None = None
    media: MediaDescriptor | None = None
    location: LocationDescriptor | None = None
    reply_to_vendor_message_id: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryReceipt(BaseModel):
    """Delivery of one message id, or of everything up to ``watermark``."""

    kind: Literal["delivery"] = "delivery"
    platform: Platform
    external_user_id: str | None = None
    vendor_message_id: str | None = None
    watermark: datetime | None = None
    timestamp: datetime


class ReadReceipt(BaseModel):
    """Read of one message id or of everything up to ``watermark``.

    ``up_to`` marks WhatsApp semantics: reading ``vendor_message_id`` implies
    every earlier outgoing message in the same conversation was read too.
    """

    kind: Literal["read"] = "read"
    platform: Platform
    external_user_id: str | None = None
    vendor_message_id: str | None = None
    watermark: datetime | None = None
    up_to: bool = False
    timestamp: datetime


WebhookEvent = Union[MessageReceived, DeliveryReceipt, ReadReceipt]

_SKIPPABLE = (ValidationError, KeyError, TypeError, ValueError, AttributeError)


def parse_vendor_timestamp(value: Any) -> datetime | None:
    """Parse seconds or milliseconds since the epoch (int, float or str)."""
    if value is None or value == "":
        return None
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        return None
    if timestamp > 1_000_000_000_000:
        timestamp = timestamp / 1000
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_webhook(body: dict[str, Any]) -> Iterator[WebhookEvent]:
    """Dispatch on the ``object`` field and yield normalized events."""
    try:
        payload = MetaWebhookPayload.model_validate(body)
    except ValidationError as exc:
        logger.warning("webhook_payload_invalid error_count=%s", exc.error_count())
        return
    platform = OBJECT_PLATFORMS.get(payload.object)
    if platform is None:
        logger.info("webhook_object_unsupported object=%s", payload.object)
        return
    if platform == Platform.whatsapp:
        yield from normalize_whatsapp(payload)
    else:
        yield from normalize_meta_messaging(payload, platform)


# ---------------------------------------------------------------------------
# Messenger / Instagram
# ---------------------------------------------------------------------------


def _entries(payload: MetaWebhookPayload, platform: Platform) -> Iterator[MetaWebhookEntry]:
    for raw in payload.entry:
        try:
            entry = MetaWebhookEntry.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "webhook_entry_skipped platform=%s error_count=%s",
                platform.value,
                exc.error_count(),
            )
            continue
        yield entry


def normalize_meta_messaging(
    payload: MetaWebhookPayload, platform: Platform
) -> Iterator[WebhookEvent]:
    for entry in _entries(payload, platform):
        account_id = entry.id
        for raw_event in entry.messaging:
            try:
                event = MetaMessagingEvent.model_validate(raw_event)
                yield from _messaging_event(event, platform, account_id)
            except _SKIPPABLE as exc:
                logger.warning(
                    "meta_messaging_event_skipped platform=%s account_id=%s error=%s",
                    platform.value,
                    account_id,
                    exc,
                )


def _messaging_event(
    event: MetaMessagingEvent, platform: Platform, account_id: str | None
) -> Iterator[WebhookEvent]:
    sender_id = (event.sender or {}).get("id")
    recipient_id = (event.recipient or {}).get("id")
    timestamp = parse_vendor_timestamp(event.timestamp) or _now()

    if event.message is not None:
        message = event.message
        if message.get("is_echo"):
            return
        if not sender_id:
            logger.warning("meta_webhook_missing_sender platform=%s", platform.value)
            return
        if account_id and sender_id == account_id:
            logger.info(
                "meta_webhook_skip_self platform=%s sender_id=%s", platform.value, sender_id
            )
            return
        received = _meta_message(message, platform, sender_id, timestamp)
        if received is not None:
            yield received
        return

    # Receipts come from the contact, so the contact is the sender.
    contact_id = sender_id
    if account_id and sender_id == account_id:
        contact_id = recipient_id

    if event.delivery is not None:
        delivery = event.delivery
        watermark = parse_vendor_timestamp(delivery.get("watermark"))
        mids = [mid for mid in delivery.get("mids") or [] if mid]
        for mid in mids:
            yield DeliveryReceipt(
                platform=platform,
                external_user_id=contact_id,
                vendor_message_id=mid,
                timestamp=timestamp,
            )
        if not mids and watermark is not None:
            yield DeliveryReceipt(
                platform=platform,
                external_user_id=contact_id,
                watermark=watermark,
                timestamp=timestamp,
            )
        return

    if event.read is not None:
        read = event.read
        watermark = parse_vendor_timestamp(read.get("watermark"))
        mid = read.get("mid")
        if mid:
            yield ReadReceipt(
                platform=platform,
                external_user_id=contact_id,
                vendor_message_id=mid,
                up_to=True,
                timestamp=timestamp,
            )
        elif watermark is not None:
            yield ReadReceipt(
                platform=platform,
                external_user_id=contact_id,
                watermark=watermark,
                timestamp=timestamp,
            )
        return

    # postbacks, reactions, typing indicators and referrals are not messages
    logger.debug(
        "meta_webhook_event_ignored platform=%s keys=%s",
        platform.value,
        sorted(event.model_dump(exclude_none=True).keys()),
    )


def _meta_message(
    message: dict[str, Any], platform: Platform, sender_id: str, timestamp: datetime
) -> MessageReceived | None:
    mid = message.get("mid")
    if not mid:
        logger.warning("meta_webhook_missing_mid platform=%s", platform.value)
        return None

    text = message.get("text") or None
    message_type = MessageType.text
    media = None
    metadata: dict[str, Any] = {}

    attachments = [a for a in message.get("attachments") or [] if isinstance(a, dict)]
    if attachments:
        attachment = attachments[0]
        attachment_type = attachment.get("type")
        attachment_payload = attachment.get("payload") or {}
        url = attachment_payload.get("url")
        if attachment_payload.get("sticker_id") and url:
            message_type = MessageType.sticker
        else:
            message_type = _ATTACHMENT_TYPES.get(attachment_type)
        if message_type is None or not url:
            if not text:
                logger.info(
                    "meta_webhook_attachment_unsupported platform=%s type=%s mid=%s",
                    platform.value,
                    attachment_type,
                    mid,
                )
                return None
            message_type = MessageType.text
        else:
            media = MediaDescriptor(ref=url, filename=attachment_payload.get("title"))
        if len(attachments) > 1:
            metadata["extra_attachments"] = attachments[1:]

    if not text and media is None:
        return None

    reply_to = (message.get("reply_to") or {}).get("mid")
    return MessageReceived(
        platform=platform,
        external_user_id=sender_id,
        vendor_message_id=mid,
        timestamp=timestamp,
        message_type=message_type,
        text=text,
        media=media,
        reply_to_vendor_message_id=reply_to,
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# WhatsApp Cloud API
# ---------------------------------------------------------------------------


def normalize_whatsapp(
    payload: MetaWebhookPayload,
) -> Iterator[WebhookEvent]:
    for entry in _entries(payload, Platform.whatsapp):
        for raw_change in entry.changes:
            try:
                change = MetaWebhookChange.model_validate(raw_change)
            except ValidationError as exc:
                logger.warning("whatsapp_change_invalid error_count=%s", exc.error_count())
                continue
            if change.field not in (None, "messages") or not change.value:
                continue
            try:
                value = WhatsAppChangeValue.model_validate(change.value)
            except ValidationError as exc:
                logger.warning("whatsapp_change_invalid error_count=%s", exc.error_count())
                continue

            names = {}
            for contact in value.contacts:
                if isinstance(contact, dict) and contact.get("wa_id"):
                    names[contact["wa_id"]] = (contact.get("profile") or {}).get("name")

            for status in value.statuses:
                if not isinstance(status, dict):
                    logger.warning("whatsapp_status_skipped error=not an object")
                    continue
                try:
                    receipt = _whatsapp_status(status)
                except _SKIPPABLE as exc:
                    logger.warning("whatsapp_status_skipped error=%s", exc)
                    continue
                if receipt is not None:
                    yield receipt

            for message in value.messages:
                if not isinstance(message, dict):
                    logger.warning("whatsapp_message_skipped error=not an object")
                    continue
                try:
                    received = _whatsapp_message(message, names)
                except _SKIPPABLE as exc:
                    logger.warning("whatsapp_message_skipped error=%s", exc)
                    continue
                if received is not None:
                    yield received


def _whatsapp_status(status: dict[str, Any]) -> DeliveryReceipt | ReadReceipt | None:
    vendor_id = status.get("id")
    state = status.get("status")
    if not vendor_id or not state:
        return None
    timestamp = parse_vendor_timestamp(status.get("timestamp")) or _now()
    recipient = status.get("recipient_id")
    if state == "delivered":
        return DeliveryReceipt(
            platform=Platform.whatsapp,
            external_user_id=recipient,
            vendor_message_id=vendor_id,
            timestamp=timestamp,
        )
    if state == "read":
        return ReadReceipt(
            platform=Platform.whatsapp,
            external_user_id=recipient,
            vendor_message_id=vendor_id,
            up_to=True,
            timestamp=timestamp,
        )
    if state == "failed":
        errors = status.get("errors") or []
        logger.warning(
            "whatsapp_status_failed_ignored vendor_message_id=%s errors=%s",
            vendor_id,
            errors,
        )
    # "sent" only echoes what the send response already told us.
    return None


def _whatsapp_message(
    message: dict[str, Any], names: dict[str, str | None]
) -> MessageReceived | None:
    vendor_id = message.get("id")
    wa_id = message.get("from")
    if not vendor_id or not wa_id:
        logger.warning("whatsapp_message_missing_ids")
        return None

    kind = message.get("type")
    timestamp = parse_vendor_timestamp(message.get("timestamp")) or _now()
    text = None
    media = None
    location = None
    message_type = MessageType.text
    metadata: dict[str, Any] = {}

    if kind == "text":
        text = (message.get("text") or {}).get("body")
    elif kind in _WHATSAPP_MEDIA_TYPES:
        block = message.get(kind) or {}
        if not block.get("id"):
            logger.info("whatsapp_media_missing_id type=%s vendor_message_id=%s", kind, vendor_id)
            return None
        message_type = _WHATSAPP_MEDIA_TYPES[kind]
        media = MediaDescriptor(
            ref=block["id"],
            mime_type=block.get("mime_type"),
            caption=block.get("caption"),
            filename=block.get("filename"),
        )
        if kind == "audio" and block.get("voice"):
            metadata["voice"] = True
    elif kind == "location":
        block = message.get("location") or {}
        location = LocationDescriptor(
            latitude=block["latitude"],
            longitude=block["longitude"],
            name=block.get("name"),
            address=block.get("address"),
        )
        message_type = MessageType.location
        text = location.as_text()
        metadata["location"] = location.model_dump(exclude_none=True)
    elif kind == "contacts":
        cards = []
        for card in message.get("contacts") or []:
            name = (card.get("name") or {}).get("formatted_name") or ""
            phones = card.get("phones") or []
            phone = phones[0].get("phone", "") if phones else ""
            cards.append(f"{name}: {phone}")
        text = "\n".join(cards) or None
        metadata["vendor_type"] = "contacts"
    elif kind == "button":
        text = (message.get("button") or {}).get("text")
        metadata["vendor_type"] = "button"
    elif kind == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        text = reply.get("title")
        metadata["vendor_type"] = "interactive"
    else:
        logger.info("whatsapp_message_type_unsupported type=%s vendor_message_id=%s", kind, vendor_id)
        return None

    if not text and media is None:
        return None

    return MessageReceived(
        platform=Platform.whatsapp,
        external_user_id=wa_id,
        vendor_message_id=vendor_id,
        timestamp=timestamp,
        message_type=message_type,
        text=text,
        media=media,
        location=location,
        reply_to_vendor_message_id=(message.get("context") or {}).get("id"),
        contact_name=names.get(wa_id),
        contact_phone=f"+{wa_id}",
        metadata=metadata,
    )
