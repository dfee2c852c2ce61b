from typing import List, Optional

from rapidgig_chat.core.logging_config import get_logger
from rapidgig_chat.repositories.device_repository import DeviceRepository
from rapidgig_chat.repositories.notification_repository import NotificationRepository
from rapidgig_chat.schemas.chat import NotificationPublic
from rapidgig_chat.services.chat_service import translate_store_errors
from rapidgig_chat.utils.notifications import PushSender

logger = get_logger(__name__)

PUSH_BODY_LENGTH = 100


class NotificationService:
    """
    Fan-out for messages that could not be delivered live.

    Undelivered messages collapse into one record per (user, conversation).
    Records are cleared by the read path, never by a separate dismiss call.
    """

    def __init__(self, notification_repo: NotificationRepository, device_repo: DeviceRepository, push: PushSender) -> None:
        self._notification_repo = notification_repo
        self._device_repo = device_repo
        self._push = push

    async def ensure_indexes(self) -> None:
        await self._notification_repo.ensure_indexes()
        await self._device_repo.ensure_indexes()

    @translate_store_errors
    async def record_undelivered(
        self,
        target_user: str,
        conversation_id: str,
        sender_id: str,
        message_preview: Optional[str],
        message_id: Optional[str] = None,
    ) -> NotificationPublic:
        doc = await self._notification_repo.upsert_undelivered(target_user, conversation_id, sender_id, message_preview)
        record = NotificationPublic.from_document(doc)
        logger.debug("Undelivered message for %s in %s (collapsed count %d)", target_user, conversation_id, record.unread_messages)
        await self._push_new_message(target_user, conversation_id, sender_id, message_preview or "", message_id)
        return record

    @translate_store_errors
    async def list_pending(self, user_id: str) -> List[NotificationPublic]:
        docs = await self._notification_repo.list_for_user(user_id)
        return [NotificationPublic.from_document(d) for d in docs]

    @translate_store_errors
    async def clear(self, user_id: str, conversation_id: str) -> int:
        return await self._notification_repo.delete_for_conversation(user_id, conversation_id)

    @translate_store_errors
    async def register_device(self, user_id: str, platform: str, token: str) -> dict:
        return await self._device_repo.register(user_id, platform, token)

    async def _push_new_message(self, receiver_id: str, conversation_id: str, sender_id: str, body: str, message_id: Optional[str]) -> None:
        if not getattr(self._push, "enabled", False):
            return
        tokens = await self._device_repo.get_tokens(receiver_id, platform="fcm")
        if not tokens:
            return
        data = {"conversation_id": conversation_id, "from": sender_id}
        if message_id:
            data["message_id"] = message_id
        failed = await self._push.send_fcm(tokens, "New message", body[:PUSH_BODY_LENGTH], data)
        if failed:
            logger.warning("Push failed for %d of %d devices of %s", len(failed), len(tokens), receiver_id)
