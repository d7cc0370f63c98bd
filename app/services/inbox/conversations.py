"""Conversation resolution and operator-side conversation operations."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.inbox import Conversation, Message, MessageDirection, Platform
from app.schemas.inbox import ConversationRead, ConversationUpdate
from app.services.common import apply_pagination, coerce_uuid
from app.services.inbox import meta_graph
from app.services.inbox.errors import ConversationNotFound
from app.websocket import broadcaster

logger = get_logger(__name__)


def normalize_phone(value: str) -> str:
    """Digits only; WhatsApp addresses contacts by bare international number."""
    return "".join(ch for ch in value if ch.isdigit())


def _get_by_external(db: Session, platform: Platform, external_user_id: str) -> Conversation | None:
    return (
        db.query(Conversation)
        .filter(Conversation.platform == platform)
        .filter(Conversation.external_user_id == external_user_id)
        .first()
    )


def resolve(
    db: Session,
    platform: Platform,
    external_user_id: str,
    *,
    contact_name: str | None = None,
    contact_phone: str | None = None,
    lead_id=None,
) -> Conversation:
    """Return the conversation for (platform, external user), creating it once.

    The vendor profile is fetched only on creation and only best-effort.
    Concurrent creators race on the (platform, external_user_id) unique
    constraint; the loser re-reads and returns the winner's row.
    """
    conversation = _get_by_external(db, platform, external_user_id)
    if conversation is not None:
        if contact_name and conversation.contact_name != contact_name and platform == Platform.whatsapp:
            conversation.contact_name = contact_name
            db.commit()
        return conversation

    profile: dict = {}
    if platform != Platform.whatsapp:
        profile = meta_graph.fetch_profile(platform, external_user_id)

    conversation = Conversation(
        platform=platform,
        external_user_id=external_user_id,
        contact_name=profile.get("name") or contact_name,
        contact_username=profile.get("username"),
        contact_avatar_url=profile.get("avatar_url"),
        contact_phone=contact_phone,
        lead_id=coerce_uuid(lead_id),
        last_message_at=datetime.now(UTC),
    )
    try:
        with db.begin_nested():
            db.add(conversation)
            db.flush()
    except IntegrityError:
        existing = _get_by_external(db, platform, external_user_id)
        if existing is None:
            raise
        logger.info(
            "inbox_conversation_create_conflict platform=%s external_user_id=%s",
            platform.value,
            external_user_id,
        )
        return existing
    db.commit()
    db.refresh(conversation)
    logger.info(
        "inbox_conversation_created conversation_id=%s platform=%s",
        conversation.id,
        platform.value,
    )
    return conversation


def message_preview(message: Message | None) -> str | None:
    if message is None:
        return None
    if message.body:
        body = message.body
        return body[:100] + "..." if len(body) > 100 else body
    if message.media_caption:
        return message.media_caption[:100]
    return f"[{message.message_type.value}]"


class Conversations:
    @staticmethod
    def get(db: Session, conversation_id: str) -> Conversation:
        try:
            conversation = db.get(Conversation, coerce_uuid(conversation_id))
        except ValueError:
            conversation = None
        if not conversation:
            raise ConversationNotFound("Conversation not found")
        return conversation

    @staticmethod
    def list(
        db: Session,
        platform: Platform | None,
        is_blocked: bool | None,
        limit: int,
        offset: int,
    ) -> list[Conversation]:
        query = db.query(Conversation)
        if platform is not None:
            query = query.filter(Conversation.platform == platform)
        if is_blocked is not None:
            query = query.filter(Conversation.is_blocked.is_(is_blocked))
        query = query.order_by(
            Conversation.last_message_at.desc().nulls_last(),
            Conversation.created_at.desc(),
        )
        return apply_pagination(query, limit, offset).all()

    @classmethod
    def list_response(cls, db: Session, platform, is_blocked, limit: int, offset: int) -> dict:
        items = cls.list(db, platform, is_blocked, limit=limit, offset=offset)
        previews = _latest_messages(db, [item.id for item in items])
        reads = []
        for item in items:
            read = ConversationRead.model_validate(item)
            read.last_message_preview = message_preview(previews.get(item.id))
            reads.append(read)
        return {"items": reads, "count": len(reads), "limit": limit, "offset": offset}

    @staticmethod
    def update(db: Session, conversation_id: str, payload: ConversationUpdate) -> Conversation:
        conversation = Conversations.get(db, conversation_id)
        data = payload.model_dump(exclude_unset=True)
        lead_changed = "lead_id" in data and data["lead_id"] != conversation.lead_id
        previous_lead_id = conversation.lead_id
        for key, value in data.items():
            if key == "is_blocked" and value is None:
                continue
            setattr(conversation, key, value)
        db.commit()
        db.refresh(conversation)
        broadcaster.broadcast_conversation_updated(conversation)
        if lead_changed:
            broadcaster.broadcast_lead_updated(conversation, previous_lead_id)
        return conversation

    @staticmethod
    def mark_read(db: Session, conversation_id: str) -> Conversation:
        conversation = Conversations.get(db, conversation_id)
        db.execute(
            update(Message)
            .where(Message.conversation_id == conversation.id)
            .where(Message.direction == MessageDirection.incoming)
            .where(Message.is_read.is_(False))
            .values(is_read=True)
        )
        conversation.unread_count = 0
        db.commit()
        db.refresh(conversation)
        broadcaster.broadcast_conversation_updated(conversation)
        return conversation


def to_read(db: Session, conversation: Conversation) -> ConversationRead:
    read = ConversationRead.model_validate(conversation)
    latest = _latest_messages(db, [conversation.id])
    read.last_message_preview = message_preview(latest.get(conversation.id))
    return read


def _latest_messages(db: Session, conversation_ids: list) -> dict:
    if not conversation_ids:
        return {}
    latest = (
        db.query(Message.conversation_id, func.max(Message.created_at).label("created_at"))
        .filter(Message.conversation_id.in_(conversation_ids))
        .group_by(Message.conversation_id)
        .subquery()
    )
    rows = (
        db.query(Message)
        .join(
            latest,
            (Message.conversation_id == latest.c.conversation_id)
            & (Message.created_at == latest.c.created_at),
        )
        .all()
    )
    return {row.conversation_id: row for row in rows}


conversations = Conversations()
