"""Operator-initiated sends: vendor call, then record, then notify.

A vendor rejection is stored as a FAILED message and re-raised so the route
can show the vendor's error text. Nothing is retried.
"""

from __future__ import annotations

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.metrics import observe_outbound
from app.models.inbox import Conversation, Message, MessageType, Platform
from app.schemas.inbox import SendMessageRequest
from app.services.inbox import conversations as conversation_service
from app.services.inbox import messages as message_service
from app.services.inbox import sender
from app.services.inbox.errors import ConversationBlocked, SendFailed, TranscodeFailed
from app.services.inbox.messages import OutgoingDraft
from app.services.inbox.normalizer import LocationDescriptor

logger = get_logger(__name__)


def _ensure_sendable(conversation: Conversation) -> None:
    if conversation.is_blocked:
        raise ConversationBlocked("Conversation is blocked")


def _deliver(db: Session, conversation: Conversation, draft: OutgoingDraft, sent_by_id, send):
    """Run ``send`` and record its outcome.

    ``send`` returns the vendor id, or a (vendor id, draft) pair when the
    vendor call itself decides part of the stored record.
    """
    platform = conversation.platform.value
    try:
        result = send()
    except TranscodeFailed:
        # Nothing reached the vendor, so there is no failed message to show.
        observe_outbound(platform, "transcode_failed")
        logger.info("inbox_send_aborted_transcode conversation_id=%s", conversation.id)
        raise
    except SendFailed as exc:
        observe_outbound(platform, "failed")
        message_service.record_failed_outgoing(
            db, conversation, draft, exc.vendor_error or exc.message, sent_by_id
        )
        raise
    if isinstance(result, tuple):
        vendor_id, draft = result
    else:
        vendor_id = result
    observe_outbound(platform, "sent")
    return message_service.record_outgoing(db, conversation, vendor_id, draft, sent_by_id)


def send_message(
    db: Session, conversation_id: str, payload: SendMessageRequest, sent_by_id: str | None
) -> Message:
    conversation = conversation_service.conversations.get(db, conversation_id)
    _ensure_sendable(conversation)

    if payload.text is not None:
        draft = OutgoingDraft(message_type=MessageType.text, body=payload.text)
        return _deliver(
            db, conversation, draft, sent_by_id,
            lambda: sender.send_text(conversation, payload.text),
        )

    if payload.location is not None:
        location = payload.location
        descriptor = LocationDescriptor(**location.model_dump())
        draft = OutgoingDraft(
            message_type=MessageType.location,
            body=descriptor.as_text(),
            metadata={"location": location.model_dump(exclude_none=True)},
        )
        return _deliver(
            db, conversation, draft, sent_by_id,
            lambda: sender.send_location(
                conversation,
                location.latitude,
                location.longitude,
                location.name,
                location.address,
            ),
        )

    media = sender.OutboundMedia(
        kind=payload.media_kind,
        url=payload.media_url,
        filename=payload.filename,
        caption=payload.caption,
    )
    return send_media(db, conversation, media, sent_by_id)


def send_media(
    db: Session,
    conversation: Conversation,
    media: sender.OutboundMedia,
    sent_by_id: str | None,
) -> Message:
    _ensure_sendable(conversation)
    draft = OutgoingDraft(
        message_type=media.kind,
        media_ref=media.url,
        media_mime_type=media.mime_type,
        media_caption=media.caption,
        media_filename=media.filename,
    )

    def _send():
        sent = sender.send_media(conversation, media)
        stored = draft.model_copy(
            update={
                "media_ref": sent.media_ref,
                "media_mime_type": sent.mime_type,
                "metadata": {"voice": True} if sent.voice else None,
            }
        )
        return sent.vendor_message_id, stored

    return _deliver(db, conversation, draft, sent_by_id, _send)


def upload_and_send(
    db: Session,
    conversation_id: str,
    content: bytes,
    filename: str,
    mime_type: str | None,
    caption: str | None,
    sent_by_id: str | None,
) -> Message:
    conversation = conversation_service.conversations.get(db, conversation_id)
    if conversation.platform != Platform.whatsapp:
        raise HTTPException(
            status_code=400,
            detail=f"File upload is not supported on {conversation.platform.value}",
        )
    media = sender.OutboundMedia(
        kind=sender.media_kind_for_mime(mime_type),
        content=content,
        filename=filename,
        mime_type=mime_type,
        caption=caption,
    )
    return send_media(db, conversation, media, sent_by_id)


def start_whatsapp_conversation(
    db: Session,
    phone: str,
    text: str,
    contact_name: str | None,
    lead_id,
    sent_by_id: str | None,
) -> tuple[Conversation, Message]:
    conversation = _resolve_whatsapp(db, phone, contact_name, lead_id)
    _ensure_sendable(conversation)
    draft = OutgoingDraft(message_type=MessageType.text, body=text)
    message = _deliver(
        db, conversation, draft, sent_by_id, lambda: sender.send_text(conversation, text)
    )
    return conversation, message


def send_template(
    db: Session,
    phone: str,
    template_name: str,
    language_code: str,
    components,
    contact_name: str | None,
    lead_id,
    sent_by_id: str | None,
) -> tuple[Conversation, Message]:
    conversation = _resolve_whatsapp(db, phone, contact_name, lead_id)
    _ensure_sendable(conversation)
    draft = OutgoingDraft(
        message_type=MessageType.template,
        body=f"[Template: {template_name}]",
        metadata={"template": template_name, "language": language_code},
    )
    message = _deliver(
        db, conversation, draft, sent_by_id,
        lambda: sender.send_template(conversation, template_name, language_code, components),
    )
    return conversation, message


def _resolve_whatsapp(db: Session, phone: str, contact_name: str | None, lead_id) -> Conversation:
    wa_id = conversation_service.normalize_phone(phone)
    if len(wa_id) < 5:
        raise HTTPException(status_code=400, detail="Phone number is not valid")
    conversation = conversation_service.resolve(
        db,
        Platform.whatsapp,
        wa_id,
        contact_name=contact_name,
        contact_phone=f"+{wa_id}",
        lead_id=lead_id,
    )
    if lead_id is not None and conversation.lead_id is None:
        conversation.lead_id = lead_id
        db.commit()
    return conversation
