from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_operator, get_db
from app.models.inbox import Platform
from app.schemas.common import ListResponse
from app.schemas.inbox import (
    ConversationRead,
    ConversationUpdate,
    MessagePage,
    MessageRead,
    RoomTokenRead,
    RoomTokenRequest,
    SendMessageRequest,
    SendResult,
    SendTemplateRequest,
    StartConversationRequest,
    WhatsAppTemplateRead,
)
from app.services.auth_flow import issue_room_token
from app.services.inbox import conversations as conversation_service
from app.services.inbox import media_proxy
from app.services.inbox import messages as message_service
from app.services.inbox import meta_graph
from app.services.inbox import outbound as outbound_service
from app.websocket.auth import is_valid_room

router = APIRouter(prefix="/inbox")

MAX_UPLOAD_BYTES = 16 * 1024 * 1024


@router.get(
    "/conversations",
    response_model=ListResponse[ConversationRead],
    tags=["inbox-conversations"],
)
def list_conversations(
    platform: Platform | None = None,
    is_blocked: bool | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return conversation_service.conversations.list_response(
        db, platform, is_blocked, limit, offset
    )


@router.get(
    "/conversations/{conversation_id}",
    response_model=ConversationRead,
    tags=["inbox-conversations"],
)
def get_conversation(conversation_id: str, db: Session = Depends(get_db)):
    conversation = conversation_service.conversations.get(db, conversation_id)
    return conversation_service.to_read(db, conversation)


@router.patch(
    "/conversations/{conversation_id}",
    response_model=ConversationRead,
    tags=["inbox-conversations"],
)
def update_conversation(
    conversation_id: str, payload: ConversationUpdate, db: Session = Depends(get_db)
):
    conversation = conversation_service.conversations.update(db, conversation_id, payload)
    return conversation_service.to_read(db, conversation)


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=ConversationRead,
    tags=["inbox-conversations"],
)
def mark_conversation_read(conversation_id: str, db: Session = Depends(get_db)):
    conversation = conversation_service.conversations.mark_read(db, conversation_id)
    return conversation_service.to_read(db, conversation)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagePage,
    tags=["inbox-messages"],
)
def list_messages(
    conversation_id: str,
    cursor: str | None = None,
    limit: int = Query(default=message_service.DEFAULT_PAGE_SIZE, ge=1, le=message_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    conversation = conversation_service.conversations.get(db, conversation_id)
    return message_service.list_messages(db, conversation.id, cursor=cursor, limit=limit)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
    tags=["inbox-messages"],
)
def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    return outbound_service.send_message(db, conversation_id, payload, operator["operator_id"])


@router.post(
    "/conversations/{conversation_id}/media",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
    tags=["inbox-messages"],
)
def upload_media(
    conversation_id: str,
    file: UploadFile = File(...),
    caption: str | None = Form(default=None),
    db: Session = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    content = file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File is too large")
    if not content:
        raise HTTPException(status_code=400, detail="File is empty")
    return outbound_service.upload_and_send(
        db,
        conversation_id,
        content,
        file.filename or "upload",
        file.content_type,
        caption,
        operator["operator_id"],
    )


@router.post(
    "/whatsapp/conversations",
    response_model=SendResult,
    status_code=status.HTTP_201_CREATED,
    tags=["inbox-whatsapp"],
)
def start_whatsapp_conversation(
    payload: StartConversationRequest,
    db: Session = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    conversation, message = outbound_service.start_whatsapp_conversation(
        db,
        payload.phone,
        payload.text,
        payload.contact_name,
        payload.lead_id,
        operator["operator_id"],
    )
    return {"conversation": conversation_service.to_read(db, conversation), "message": message}


@router.get(
    "/whatsapp/templates",
    response_model=list[WhatsAppTemplateRead],
    tags=["inbox-whatsapp"],
)
def list_whatsapp_templates():
    return meta_graph.list_whatsapp_templates()


@router.post(
    "/whatsapp/templates/send",
    response_model=SendResult,
    status_code=status.HTTP_201_CREATED,
    tags=["inbox-whatsapp"],
)
def send_whatsapp_template(
    payload: SendTemplateRequest,
    db: Session = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    conversation, message = outbound_service.send_template(
        db,
        payload.phone,
        payload.template_name,
        payload.language_code,
        payload.components,
        payload.contact_name,
        payload.lead_id,
        operator["operator_id"],
    )
    return {"conversation": conversation_service.to_read(db, conversation), "message": message}


@router.get("/media", tags=["inbox-media"])
async def proxy_media(request: Request, ref: str = Query(min_length=1, max_length=2048)):
    return await media_proxy.stream_media(ref, request.headers.get("range"))


@router.post(
    "/realtime/room-token",
    response_model=RoomTokenRead,
    tags=["inbox-realtime"],
)
def create_room_token(
    payload: RoomTokenRequest,
    db: Session = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    if not is_valid_room(payload.room):
        raise HTTPException(status_code=400, detail="Unknown room")
    if payload.room.startswith("conversation:"):
        conversation_service.conversations.get(db, payload.room.split(":", 1)[1])
    token, ttl = issue_room_token(operator["operator_id"], payload.room)
    return {"room": payload.room, "token": token, "expires_in": ttl}
