from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from rapidgig_chat.models.notification import NotificationDocument
from rapidgig_chat.repositories.conversation_repository import utc_now


class NotificationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["notifications"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("conversation_id", ASCENDING)], unique=True)
        await self.collection.create_index([("user_id", ASCENDING), ("updated_at", DESCENDING)])

    async def upsert_undelivered(self, user_id: str, conversation_id: str, sender_id: str, preview: Optional[str]) -> NotificationDocument:
        """One record per (user, conversation); further messages bump its counter."""
        now = utc_now()
        query = {"user_id": user_id, "conversation_id": conversation_id}
        update = {
            "$inc": {"unread_messages": 1},
            "$set": {"sender_id": sender_id, "preview": preview, "updated_at": now},
            "$setOnInsert": {"created_at": now},
        }
        try:
            doc = await self.collection.find_one_and_update(query, update, upsert=True, return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            doc = await self.collection.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        doc["_id"] = str(doc["_id"])
        return doc

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[NotificationDocument]:
        cur = self.collection.find({"user_id": user_id}).sort([("updated_at", DESCENDING)]).limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def delete_for_conversation(self, user_id: str, conversation_id: str) -> int:
        result = await self.collection.delete_many({"user_id": user_id, "conversation_id": conversation_id})
        return result.deleted_count or 0
