"""Webhook ingestion boundary.

Everything below the route runs here: normalize, resolve, store, notify.
No error leaves this module; each event is processed on its own so one bad
event never costs the rest of the batch, and the vendor always gets its 200.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, NamedTuple

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.metrics import observe_webhook_event
from app.models.inbox import Platform
from app.services.inbox import conversations as conversation_service
from app.services.inbox import messages as message_service
from app.services.inbox.errors import UnknownConversationForReceipt
from app.services.inbox.normalizer import (
    OBJECT_PLATFORMS,
    MessageReceived,
    normalize_webhook,
)

logger = get_logger(__name__)


class SeenTarget(NamedTuple):
    """A stored inbound message the vendor should be told was seen."""

    platform: Platform
    external_user_id: str
    vendor_message_id: str


def payload_digest(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()[:16]


def process_webhook_payload(
    db: Session, expected_platform: Platform, body: bytes
) -> list[SeenTarget]:
    """Apply every event in one webhook body.

    Returns the inbound messages that were newly stored, for the optional
    best-effort mark-seen call made after the response.
    """
    digest = payload_digest(body)
    try:
        data: Any = json.loads(body)
    except ValueError:
        logger.warning(
            "webhook_body_not_json platform=%s payload=%s", expected_platform.value, digest
        )
        observe_webhook_event(expected_platform.value, "payload", "invalid")
        return []
    if not isinstance(data, dict):
        observe_webhook_event(expected_platform.value, "payload", "invalid")
        return []

    platform = OBJECT_PLATFORMS.get(data.get("object"))
    if platform is not None and platform != expected_platform:
        logger.warning(
            "webhook_platform_mismatch expected=%s object=%s payload=%s",
            expected_platform.value,
            data.get("object"),
            digest,
        )
        observe_webhook_event(expected_platform.value, "payload", "mismatch")
        return []

    seen: list[SeenTarget] = []
    try:
        events = list(normalize_webhook(data))
    except Exception:
        logger.exception(
            "webhook_normalize_failed platform=%s payload=%s", expected_platform.value, digest
        )
        observe_webhook_event(expected_platform.value, "payload", "error")
        return []

    for event in events:
        try:
            if isinstance(event, MessageReceived):
                stored = _handle_message(db, event)
                if stored:
                    seen.append(
                        SeenTarget(event.platform, event.external_user_id, event.vendor_message_id)
                    )
                observe_webhook_event(
                    event.platform.value, event.kind, "stored" if stored else "duplicate"
                )
            else:
                moved = message_service.apply_receipt(db, event)
                observe_webhook_event(
                    event.platform.value, event.kind, "applied" if moved else "noop"
                )
        except UnknownConversationForReceipt as exc:
            db.rollback()
            logger.info(
                "webhook_receipt_dropped platform=%s kind=%s payload=%s reason=%s",
                event.platform.value,
                event.kind,
                digest,
                exc.message,
            )
            observe_webhook_event(event.platform.value, event.kind, "dropped")
        except Exception:
            db.rollback()
            logger.exception(
                "webhook_event_failed platform=%s kind=%s payload=%s",
                event.platform.value,
                event.kind,
                digest,
            )
            observe_webhook_event(event.platform.value, event.kind, "error")
    return seen


def _handle_message(db: Session, event: MessageReceived) -> bool:
    conversation = conversation_service.resolve(
        db,
        event.platform,
        event.external_user_id,
        contact_name=event.contact_name,
        contact_phone=event.contact_phone,
    )
    return message_service.record_incoming(db, conversation, event) is not None
