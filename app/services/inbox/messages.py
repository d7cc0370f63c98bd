"""Message persistence: idempotent inbound inserts, outbound records, receipts."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException
from pydantic import BaseModel
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.inbox import (
    STATUS_RANK,
    Conversation,
    Message,
    MessageDirection,
    MessageStatus,
    MessageType,
)
from app.services.common import coerce_uuid
from app.services.inbox.errors import UnknownConversationForReceipt
from app.services.inbox.normalizer import DeliveryReceipt, MessageReceived, ReadReceipt
from app.websocket import broadcaster

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


class OutgoingDraft(BaseModel):
    """What the operator sent, independent of the vendor wire format."""

    message_type: MessageType = MessageType.text
    body: str | None = None
    media_ref: str | None = None
    media_mime_type: str | None = None
    media_caption: str | None = None
    media_filename: str | None = None
    metadata: dict[str, Any] | None = None


def _find_by_vendor_id(db: Session, conversation: Conversation, vendor_message_id: str) -> Message | None:
    return (
        db.query(Message)
        .filter(Message.platform == conversation.platform)
        .filter(Message.vendor_message_id == vendor_message_id)
        .first()
    )


def record_incoming(
    db: Session, conversation: Conversation, event: MessageReceived
) -> Message | None:
    """Store an inbound message once per vendor message id.

    Returns None when the vendor id was already stored (a webhook replay);
    in that case neither the unread counter nor the notifier is touched.
    """
    reply_to_id = None
    if event.reply_to_vendor_message_id:
        quoted = _find_by_vendor_id(db, conversation, event.reply_to_vendor_message_id)
        reply_to_id = quoted.id if quoted else None

    media = event.media
    message = Message(
        conversation_id=conversation.id,
        platform=conversation.platform,
        vendor_message_id=event.vendor_message_id,
        direction=MessageDirection.incoming,
        message_type=event.message_type,
        body=event.text,
        media_ref=media.ref if media else None,
        media_mime_type=media.mime_type if media else None,
        media_caption=media.caption if media else None,
        media_filename=media.filename if media else None,
        status=MessageStatus.delivered,
        is_read=False,
        reply_to_vendor_message_id=event.reply_to_vendor_message_id,
        reply_to_message_id=reply_to_id,
        metadata_=event.metadata or None,
        created_at=event.timestamp,
    )
    try:
        with db.begin_nested():
            db.add(message)
            db.flush()
    except IntegrityError:
        if _find_by_vendor_id(db, conversation, event.vendor_message_id) is None:
            raise
        logger.info(
            "inbox_duplicate_message platform=%s vendor_message_id=%s",
            conversation.platform.value,
            event.vendor_message_id,
        )
        return None

    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(
            unread_count=Conversation.unread_count + 1,
            last_message_at=case(
                (Conversation.last_message_at.is_(None), event.timestamp),
                (Conversation.last_message_at < event.timestamp, event.timestamp),
                else_=Conversation.last_message_at,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(message)
    db.refresh(conversation)
    logger.info(
        "inbox_message_received conversation_id=%s message_id=%s type=%s",
        conversation.id,
        message.id,
        message.message_type.value,
    )
    if conversation.is_blocked:
        logger.info("inbox_notify_skipped_blocked conversation_id=%s", conversation.id)
    else:
        broadcaster.broadcast_new_message(message, conversation)
    return message


def record_outgoing(
    db: Session,
    conversation: Conversation,
    vendor_message_id: str,
    draft: OutgoingDraft,
    sent_by_id: str | None = None,
) -> Message:
    """Store an operator send the vendor acknowledged and reset unread."""
    now = datetime.now(UTC)
    message = _outgoing_message(conversation, draft, sent_by_id, now)
    message.vendor_message_id = vendor_message_id
    message.status = MessageStatus.sent
    db.add(message)
    conversation.unread_count = 0
    conversation.last_message_at = now
    db.commit()
    db.refresh(message)
    db.refresh(conversation)
    logger.info(
        "inbox_message_sent conversation_id=%s message_id=%s vendor_message_id=%s",
        conversation.id,
        message.id,
        vendor_message_id,
    )
    broadcaster.broadcast_new_message(message, conversation)
    return message


def record_failed_outgoing(
    db: Session,
    conversation: Conversation,
    draft: OutgoingDraft,
    error: str,
    sent_by_id: str | None = None,
) -> Message:
    """Store a send the vendor rejected. Conversation aggregates stay as they are."""
    message = _outgoing_message(conversation, draft, sent_by_id, datetime.now(UTC))
    message.status = MessageStatus.failed
    message.error = error[:2000]
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(
        "inbox_message_send_failed conversation_id=%s message_id=%s",
        conversation.id,
        message.id,
    )
    broadcaster.broadcast_new_message(message, conversation)
    return message


def _outgoing_message(
    conversation: Conversation,
    draft: OutgoingDraft,
    sent_by_id: str | None,
    created_at: datetime,
) -> Message:
    return Message(
        conversation_id=conversation.id,
        platform=conversation.platform,
        direction=MessageDirection.outgoing,
        message_type=draft.message_type,
        body=draft.body,
        media_ref=draft.media_ref,
        media_mime_type=draft.media_mime_type,
        media_caption=draft.media_caption,
        media_filename=draft.media_filename,
        is_read=True,
        sent_by_id=sent_by_id,
        metadata_=draft.metadata,
        created_at=created_at,
    )


def apply_receipt(db: Session, event: DeliveryReceipt | ReadReceipt) -> list[Message]:
    """Advance outgoing message status forward-only; return the moved messages.

    Raises:
        UnknownConversationForReceipt: the receipt references a message or
            contact this deployment has no record of
    """
    target = MessageStatus.read if isinstance(event, ReadReceipt) else MessageStatus.delivered
    lower = [status for status, rank in STATUS_RANK.items() if rank < STATUS_RANK[target]]

    filters = [
        Message.direction == MessageDirection.outgoing,
        Message.status.in_(lower),
    ]
    if event.vendor_message_id:
        anchor = (
            db.query(Message)
            .filter(Message.platform == event.platform)
            .filter(Message.vendor_message_id == event.vendor_message_id)
            .first()
        )
        if anchor is None or anchor.direction != MessageDirection.outgoing:
            raise UnknownConversationForReceipt(
                f"No outgoing message for vendor id {event.vendor_message_id}"
            )
        if isinstance(event, ReadReceipt) and event.up_to:
            filters += [
                Message.conversation_id == anchor.conversation_id,
                Message.created_at <= anchor.created_at,
            ]
        else:
            filters.append(Message.id == anchor.id)
    elif event.watermark is not None and event.external_user_id:
        conversation = (
            db.query(Conversation)
            .filter(Conversation.platform == event.platform)
            .filter(Conversation.external_user_id == event.external_user_id)
            .first()
        )
        if conversation is None:
            raise UnknownConversationForReceipt(
                f"No conversation for {event.platform.value} user {event.external_user_id}"
            )
        filters += [
            Message.conversation_id == conversation.id,
            Message.created_at <= event.watermark,
        ]
    else:
        raise UnknownConversationForReceipt("Receipt carries neither message id nor watermark")

    ids = list(db.scalars(select(Message.id).where(*filters)))
    if not ids:
        return []
    # The status guard is repeated so a concurrent later receipt is never undone.
    db.execute(
        update(Message)
        .where(Message.id.in_(ids))
        .where(Message.status.in_(lower))
        .values(status=target, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    moved = db.query(Message).filter(Message.id.in_(ids)).filter(Message.status == target).all()
    for message in moved:
        broadcaster.broadcast_message_status(message.id, message.conversation_id, target.value)
    logger.info(
        "inbox_receipt_applied platform=%s status=%s count=%s",
        event.platform.value,
        target.value,
        len(moved),
    )
    return moved


def list_messages(
    db: Session,
    conversation_id,
    cursor: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """One page of history, newest page first, items oldest-first."""
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    conversation_uuid = coerce_uuid(conversation_id)
    query = db.query(Message).filter(Message.conversation_id == conversation_uuid)
    if cursor:
        try:
            anchor = db.get(Message, coerce_uuid(cursor))
        except ValueError:
            anchor = None
        if anchor is None or anchor.conversation_id != conversation_uuid:
            raise HTTPException(status_code=400, detail="Invalid cursor")
        query = query.filter(
            or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            )
        )
    rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    rows = rows[:limit]
    return {
        "items": list(reversed(rows)),
        "has_more": has_more,
        "next_cursor": str(rows[-1].id) if has_more and rows else None,
    }
