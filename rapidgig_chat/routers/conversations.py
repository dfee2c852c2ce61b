from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile

from rapidgig_chat.database.connection import mongo_db_dependency
from rapidgig_chat.realtime.coordinator import DeliveryCoordinator
from rapidgig_chat.repositories.conversation_repository import ConversationRepository
from rapidgig_chat.repositories.message_repository import MessageRepository
from rapidgig_chat.routers.chat import get_coordinator
from rapidgig_chat.schemas.chat import ConversationSummary, CreateConversationRequest
from rapidgig_chat.services.chat_service import ChatService
from rapidgig_chat.utils.dependencies import get_current_user
from rapidgig_chat.utils.file_storage import LocalFileStorage


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    return ChatService(msg_repo, convo_repo)


def get_file_storage(request: Request) -> LocalFileStorage:
    return request.app.state.file_storage


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    user_id = current_user["_id"]
    items, next_cursor = await service.list_conversations_for(user_id, limit=limit, cursor=cursor)
    return {"items": [ConversationSummary.for_viewer(c, user_id) for c in items], "next_cursor": next_cursor}


@router.post("")
async def get_or_create_conversation(body: CreateConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    convo = await service.get_or_create_conversation(current_user["_id"], body.other_user_id)
    return ConversationSummary.for_viewer(convo, current_user["_id"])


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[int] = Query(None, ge=1),
    page: Optional[int] = Query(None, ge=1),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    # before= is the stable cursor; page= is kept for offset-style clients
    messages, next_cursor, has_more = await service.get_history(conversation_id, current_user["_id"], limit=limit, before=before, page=page)
    return {"items": messages, "next_cursor": next_cursor, "has_more": has_more}


@router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    content: str = Form(""),
    receiver_id: Optional[str] = Form(None, alias="receiverId"),
    message_type: str = Form("text", alias="messageType"),
    client_message_id: Optional[str] = Form(None, alias="clientMessageId"),
    file: Optional[UploadFile] = File(None),
    current_user: dict = Depends(get_current_user),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
    storage: LocalFileStorage = Depends(get_file_storage),
):
    fields = {"content": content, "message_type": message_type, "client_message_id": client_message_id}
    stored = None
    if file is not None:
        # membership is checked before anything touches disk
        await coordinator.store.get_conversation(conversation_id, current_user["_id"])
        stored = await storage.save(file)
        fields.update(
            file_url=stored.url,
            file_name=stored.name,
            file_size=stored.size,
            message_type=storage.message_type_for(stored),
        )
    elif message_type != "text":
        raise ValueError("Attachment messages need a file")
    try:
        message, delivered = await coordinator.post_message(
            current_user["_id"],
            conversation_id=conversation_id,
            receiver_id=receiver_id,
            **fields,
        )
    except Exception:
        if stored is not None:
            await storage.discard(stored)
        raise
    return {"message": message, "delivered": delivered}


@router.put("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), coordinator: DeliveryCoordinator = Depends(get_coordinator)):
    updated = await coordinator.mark_read_for(current_user["_id"], conversation_id)
    return {"updated": updated}
