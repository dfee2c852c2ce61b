import functools
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from bson import ObjectId
from pymongo.errors import ConnectionFailure, ExecutionTimeout, WTimeoutError

from rapidgig_chat.core.errors import ChatPermissionError, NotFoundError, TransientIOError
from rapidgig_chat.core.logging_config import get_logger
from rapidgig_chat.repositories.conversation_repository import ConversationRepository, utc_now
from rapidgig_chat.repositories.message_repository import MessageRepository
from rapidgig_chat.schemas.chat import ConversationPublic, MessagePublic

logger = get_logger(__name__)

T = TypeVar("T")

PREVIEW_LENGTH = 200
TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


def translate_store_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Surface pymongo availability failures as TransientIOError."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as exc:
            logger.warning("Store unavailable during %s: %s", func.__name__, exc)
            raise TransientIOError(f"Message store temporarily unavailable: {exc}") from exc

    return wrapper


class ChatService:
    """
    Durable conversation threads.

    Owns message ordering (a per-conversation ``seq``) and the per-participant
    unread counters. All counter and flag changes are single atomic updates in
    the repositories.
    """

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo

    async def ensure_indexes(self) -> None:
        await self._conversation_repo.ensure_indexes()
        await self._message_repo.ensure_indexes()

    @translate_store_errors
    async def get_or_create_conversation(self, user_a: str, user_b: str) -> ConversationPublic:
        if not user_a or not user_b:
            raise ValueError("Both participants are required")
        if user_a == user_b:
            raise ValueError("Cannot create conversation with yourself")
        convo = await self._conversation_repo.get_or_create_one_to_one(user_a, user_b)
        return ConversationPublic.from_document(convo)

    @translate_store_errors
    async def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> ConversationPublic:
        doc = await self._conversation_repo.get(conversation_id)
        if doc is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        convo = ConversationPublic.from_document(doc)
        if user_id is not None and user_id not in convo.participants:
            raise ChatPermissionError("Not a participant of this conversation")
        return convo

    @translate_store_errors
    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        client_message_id: Optional[str] = None,
    ) -> MessagePublic:
        content = (content or "").strip()
        if not content and not file_url:
            raise ValueError("Message content cannot be empty")
        convo = await self.get_conversation(conversation_id, sender_id)
        receiver_id = convo.other_participant(sender_id)

        if client_message_id:
            existing = await self._message_repo.find_by_client_id(convo.id, sender_id, client_message_id)
            if existing is not None:
                logger.debug("Duplicate client_message_id %s in %s, returning stored copy", client_message_id, convo.id)
                return MessagePublic.from_document(existing)

        seq = await self._conversation_repo.allocate_seq(convo.id, sender_id)
        if seq is None:
            raise ChatPermissionError("Not a participant of this conversation")
        message_id = ObjectId()
        sent_at = utc_now()
        saved = await self._message_repo.save_message(
            message_id=message_id,
            conversation_id=convo.id,
            seq=seq,
            sent_at=sent_at,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            message_type=message_type,
            file_url=file_url,
            file_name=file_name,
            file_size=file_size,
            client_message_id=client_message_id,
        )
        preview = content[:PREVIEW_LENGTH] if content else (file_name or message_type)
        await self._conversation_repo.update_on_new_message(
            convo.id, str(message_id), seq, sent_at, preview, sender_id, receiver_id
        )
        return MessagePublic.from_document(saved)

    @translate_store_errors
    async def list_messages(
        self,
        conversation_id: str,
        before: Optional[int] = None,
        limit: int = 50,
        user_id: Optional[str] = None,
    ) -> List[MessagePublic]:
        """Newest first. Callers reverse for display."""
        convo = await self.get_conversation(conversation_id, user_id)
        docs = await self._message_repo.get_messages_by_conversation(convo.id, limit=limit, before=before)
        return [MessagePublic.from_document(d) for d in docs]

    @translate_store_errors
    async def get_history(
        self,
        conversation_id: str,
        user_id: str,
        limit: int = 50,
        before: Optional[int] = None,
        page: Optional[int] = None,
    ) -> Tuple[List[MessagePublic], Optional[int], bool]:
        """Chronological page for display plus (next ``before`` cursor, has_more)."""
        convo = await self.get_conversation(conversation_id, user_id)
        skip = (page - 1) * limit if page and before is None else 0
        docs = await self._message_repo.get_messages_by_conversation(convo.id, limit=limit + 1, before=before, skip=skip)
        has_more = len(docs) > limit
        docs = docs[:limit]
        items = [MessagePublic.from_document(d) for d in reversed(docs)]
        next_cursor = items[0].seq if items and has_more else None
        return items, next_cursor, has_more

    @translate_store_errors
    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        convo = await self.get_conversation(conversation_id, reader_id)
        modified = await self._message_repo.mark_read(convo.id, reader_id)
        # only the flipped messages leave the counter
        await self._conversation_repo.decrement_unread(convo.id, reader_id, modified)
        return modified

    @translate_store_errors
    async def list_conversations_for(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationPublic], Optional[str]]:
        items, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
        return [ConversationPublic.from_document(it) for it in items], next_cursor

    @translate_store_errors
    async def delete_message(self, message_id: str, user_id: str) -> MessagePublic:
        doc = await self._message_repo.soft_delete(message_id, user_id)
        if doc is None:
            raise NotFoundError("Message not found or access denied")
        return MessagePublic.from_document(doc)

    @translate_store_errors
    async def search_messages(self, user_id: str, term: str, conversation_id: Optional[str] = None) -> List[MessagePublic]:
        term = (term or "").strip()
        if not term:
            raise ValueError("Search term is required")
        if conversation_id:
            convo = await self.get_conversation(conversation_id, user_id)
            conversation_ids = [convo.id]
        else:
            conversation_ids = await self._conversation_repo.list_ids_for_user(user_id)
        docs = await self._message_repo.search(conversation_ids, term)
        return [MessagePublic.from_document(d) for d in docs]

    @translate_store_errors
    async def unread_total(self, user_id: str) -> int:
        return await self._conversation_repo.unread_total(user_id)
