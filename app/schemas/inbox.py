from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.inbox import MessageDirection, MessageStatus, MessageType, Platform


# ---------------------------------------------------------------------------
# Vendor webhook payloads
# ---------------------------------------------------------------------------


class MetaMessagingEvent(BaseModel):
    """One item of ``entry[].messaging`` (Messenger and Instagram)."""

    model_config = ConfigDict(extra="allow")

    sender: dict[str, Any] | None = None
    recipient: dict[str, Any] | None = None
    timestamp: int | None = None
    message: dict[str, Any] | None = None
    delivery: dict[str, Any] | None = None
    read: dict[str, Any] | None = None
    postback: dict[str, Any] | None = None


class WhatsAppChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: str | None = None
    metadata: dict[str, Any] | None = None
    contacts: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)


class MetaWebhookChange(BaseModel):
    model_config = ConfigDict(extra="allow")

    field: str | None = None
    value: dict[str, Any] | None = None


class MetaWebhookEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    time: int | None = None
    # items are validated one at a time by the normalizer
    messaging: list[Any] = Field(default_factory=list)
    changes: list[Any] = Field(default_factory=list)


class MetaWebhookPayload(BaseModel):
    """Top-level body of every Meta webhook; ``object`` names the vendor shape."""

    model_config = ConfigDict(extra="allow")

    object: str
    entry: list[Any] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    platform: Platform
    external_user_id: str
    lead_id: UUID | None = None
    contact_name: str | None = None
    contact_username: str | None = None
    contact_avatar_url: str | None = None
    contact_phone: str | None = None
    is_blocked: bool
    unread_count: int
    last_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    last_message_preview: str | None = None


class ConversationUpdate(BaseModel):
    is_blocked: bool | None = None
    lead_id: UUID | None = None


class StartConversationRequest(BaseModel):
    phone: str = Field(min_length=5, max_length=40)
    text: str = Field(min_length=1, max_length=4096)
    contact_name: str | None = Field(default=None, max_length=200)
    lead_id: UUID | None = None

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("text must not be blank")
        return value


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    conversation_id: UUID
    platform: Platform
    vendor_message_id: str | None = None
    direction: MessageDirection
    message_type: MessageType
    body: str | None = None
    media_ref: str | None = None
    media_mime_type: str | None = None
    media_caption: str | None = None
    media_filename: str | None = None
    status: MessageStatus
    is_read: bool
    error: str | None = None
    sent_by_id: str | None = None
    reply_to_vendor_message_id: str | None = None
    reply_to_message_id: UUID | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class MessagePage(BaseModel):
    items: list[MessageRead]
    has_more: bool
    next_cursor: str | None = None


class LocationPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    name: str | None = Field(default=None, max_length=200)
    address: str | None = Field(default=None, max_length=500)


class SendMessageRequest(BaseModel):
    """Exactly one of ``text``, ``media_url`` or ``location``."""

    text: str | None = Field(default=None, max_length=4096)
    media_url: str | None = Field(default=None, max_length=2048)
    media_kind: MessageType | None = None
    caption: str | None = Field(default=None, max_length=1024)
    filename: str | None = Field(default=None, max_length=255)
    location: LocationPayload | None = None

    @model_validator(mode="after")
    def _one_content_kind(self):
        if self.text is not None:
            self.text = self.text.strip() or None
        provided = [
            name
            for name in ("text", "media_url", "location")
            if getattr(self, name) is not None
        ]
        if len(provided) != 1:
            raise ValueError("Provide exactly one of text, media_url or location")
        if self.media_url is not None:
            if self.media_kind not in {
                MessageType.image,
                MessageType.video,
                MessageType.audio,
                MessageType.document,
                MessageType.sticker,
            }:
                raise ValueError("media_kind must be image, video, audio, document or sticker")
            if not self.media_url.startswith(("http://", "https://")):
                raise ValueError("media_url must be an http(s) URL")
        return self


class SendTemplateRequest(BaseModel):
    phone: str = Field(min_length=5, max_length=40)
    template_name: str = Field(min_length=1, max_length=512)
    language_code: str = Field(min_length=2, max_length=15)
    components: list[dict[str, Any]] | None = None
    contact_name: str | None = Field(default=None, max_length=200)
    lead_id: UUID | None = None


class WhatsAppTemplateRead(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    language: str | None = None
    status: str | None = None
    category: str | None = None
    components: list[dict[str, Any]] = Field(default_factory=list)


class SendResult(BaseModel):
    conversation: ConversationRead
    message: MessageRead


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


class RoomTokenRequest(BaseModel):
    room: str = Field(min_length=1, max_length=120)


class RoomTokenRead(BaseModel):
    room: str
    token: str
    expires_in: int
