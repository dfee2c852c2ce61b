from typing import Optional

from fastapi import APIRouter, Depends, Query

from rapidgig_chat.routers.conversations import get_chat_service
from rapidgig_chat.services.chat_service import ChatService
from rapidgig_chat.utils.dependencies import get_current_user


router = APIRouter(prefix="/messages", tags=["chat"])


@router.get("/search")
async def search_messages(q: str = Query(..., min_length=1), conversation_id: Optional[str] = Query(None, alias="conversationId"), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages = await service.search_messages(current_user["_id"], q, conversation_id)
    return {"items": messages}


@router.get("/unread-count")
async def unread_count(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"unread_count": await service.unread_total(current_user["_id"])}


@router.delete("/{message_id}")
async def delete_message(message_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    message = await service.delete_message(message_id, current_user["_id"])
    return {"message": message}
