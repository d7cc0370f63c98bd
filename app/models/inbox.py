import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class Platform(enum.Enum):
    messenger = "messenger"
    instagram = "instagram"
    whatsapp = "whatsapp"


class MessageDirection(enum.Enum):
    incoming = "incoming"
    outgoing = "outgoing"


class MessageType(enum.Enum):
    text = "text"
    image = "image"
    video = "video"
    audio = "audio"
    document = "document"
    sticker = "sticker"
    location = "location"
    template = "template"


class MessageStatus(enum.Enum):
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


# Forward-only ordering for receipts. FAILED sits outside it and is only
# written at send time.
STATUS_RANK = {
    MessageStatus.sent: 0,
    MessageStatus.delivered: 1,
    MessageStatus.read: 2,
}


class Conversation(Base):
    __tablename__ = "inbox_conversations"
    __table_args__ = (
        UniqueConstraint(
            "platform", "external_user_id", name="uq_inbox_conversations_platform_user"
        ),
        Index("ix_inbox_conversations_last_message_at", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    platform: Mapped[Platform] = mapped_column(Enum(Platform), nullable=False)
    external_user_id: Mapped[str] = mapped_column(String(120), nullable=False)
    # Reference into the CRM lead table, which lives outside this subsystem.
    lead_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    contact_name: Mapped[str | None] = mapped_column(String(200))
    contact_username: Mapped[str | None] = mapped_column(String(120))
    contact_avatar_url: Mapped[str | None] = mapped_column(Text)
    contact_phone: Mapped[str | None] = mapped_column(String(40))
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    messages = relationship(
        "Message", back_populates="conversation", order_by="Message.created_at"
    )


class Message(Base):
    __tablename__ = "inbox_messages"
    __table_args__ = (
        UniqueConstraint(
            "platform", "vendor_message_id", name="uq_inbox_messages_platform_vendor_id"
        ),
        Index("ix_inbox_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("inbox_conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(Enum(Platform), nullable=False)
    vendor_message_id: Mapped[str | None] = mapped_column(String(255))
    direction: Mapped[MessageDirection] = mapped_column(
        Enum(MessageDirection), nullable=False
    )
    message_type: Mapped[MessageType] = mapped_column(
        Enum(MessageType), default=MessageType.text, nullable=False
    )
    body: Mapped[str | None] = mapped_column(Text)
    media_ref: Mapped[str | None] = mapped_column(Text)
    media_mime_type: Mapped[str | None] = mapped_column(String(120))
    media_caption: Mapped[str | None] = mapped_column(Text)
    media_filename: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[MessageStatus] = mapped_column(
        Enum(MessageStatus), default=MessageStatus.sent, nullable=False
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    sent_by_id: Mapped[str | None] = mapped_column(String(120))
    reply_to_vendor_message_id: Mapped[str | None] = mapped_column(String(255))
    reply_to_message_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    conversation = relationship("Conversation", back_populates="messages")
