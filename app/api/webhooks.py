"""Vendor-facing webhook routes for Messenger, Instagram and WhatsApp.

POST handlers always answer 200: a failed acknowledgement only makes the
vendor retry, and a retry of a forged or broken delivery helps nobody.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.logging import get_logger
from app.metrics import WEBHOOK_SIGNATURE_FAILURES
from app.models.inbox import Platform
from app.services.inbox import meta_graph
from app.services.inbox import webhooks as webhook_service
from app.services.inbox.errors import InvalidSignature
from app.services.inbox.signature import SIGNATURE_HEADER, require_webhook_signature

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_ACK = {"status": "ok"}


def _verify_subscription(
    platform: Platform, mode: str | None, token: str | None, challenge: str | None
) -> PlainTextResponse:
    expected = settings.verify_token_for(platform.value)
    if mode == "subscribe" and expected and token == expected:
        logger.info("webhook_verification_succeeded platform=%s", platform.value)
        return PlainTextResponse(challenge or "")
    logger.warning(
        "webhook_verification_failed platform=%s mode=%s token_configured=%s",
        platform.value,
        mode,
        bool(expected),
    )
    return PlainTextResponse("Forbidden", status_code=403)


def _mark_seen(targets: list[webhook_service.SeenTarget]) -> None:
    for target in targets:
        meta_graph.mark_seen(target.platform, target.external_user_id, target.vendor_message_id)


async def _receive(
    platform: Platform,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session,
) -> dict:
    try:
        body = await request.body()
    except Exception:
        logger.warning("webhook_body_unreadable platform=%s", platform.value)
        return _ACK

    try:
        require_webhook_signature(
            body,
            request.headers.get(SIGNATURE_HEADER),
            settings.app_secret_for(platform.value),
            platform.value,
        )
    except InvalidSignature:
        WEBHOOK_SIGNATURE_FAILURES.labels(platform=platform.value).inc()
        logger.warning(
            "webhook_signature_rejected platform=%s payload=%s",
            platform.value,
            webhook_service.payload_digest(body),
        )
        return _ACK

    try:
        seen = await run_in_threadpool(
            webhook_service.process_webhook_payload, db, platform, body
        )
    except Exception:
        logger.exception(
            "webhook_processing_failed platform=%s payload=%s",
            platform.value,
            webhook_service.payload_digest(body),
        )
        return _ACK

    if seen:
        background_tasks.add_task(_mark_seen, seen)
    return _ACK


@router.get("/meta/messenger", response_class=PlainTextResponse)
def verify_messenger_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    return _verify_subscription(Platform.messenger, hub_mode, hub_verify_token, hub_challenge)


@router.post("/meta/messenger")
async def receive_messenger_webhook(
    request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    return await _receive(Platform.messenger, request, background_tasks, db)


@router.get("/meta/instagram", response_class=PlainTextResponse)
def verify_instagram_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    return _verify_subscription(Platform.instagram, hub_mode, hub_verify_token, hub_challenge)


@router.post("/meta/instagram")
async def receive_instagram_webhook(
    request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    return await _receive(Platform.instagram, request, background_tasks, db)


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_whatsapp_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    return _verify_subscription(Platform.whatsapp, hub_mode, hub_verify_token, hub_challenge)


@router.post("/whatsapp")
async def receive_whatsapp_webhook(
    request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    return await _receive(Platform.whatsapp, request, background_tasks, db)
