from app.models.inbox import (  # noqa: F401
    Conversation,
    Message,
    MessageDirection,
    MessageStatus,
    MessageType,
    Platform,
)
