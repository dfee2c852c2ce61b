import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from rapidgig_chat.models.message import MessageDocument
from rapidgig_chat.repositories.conversation_repository import to_object_id, utc_now

DELETED_PLACEHOLDER = "[Message deleted]"


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", DESCENDING)], unique=True)
        await self.collection.create_index([("receiver_id", ASCENDING), ("is_read", ASCENDING)])
        await self.collection.create_index([("conversation_id", ASCENDING), ("sender_id", ASCENDING), ("client_message_id", ASCENDING)])

    async def save_message(
        self,
        message_id: ObjectId,
        conversation_id: str,
        seq: int,
        sent_at: datetime,
        sender_id: str,
        receiver_id: str,
        content: str,
        message_type: str = "text",
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "message_type": message_type,
            "file_url": file_url,
            "file_name": file_name,
            "file_size": file_size,
            "seq": seq,
            "created_at": sent_at,
            "is_read": False,
            "read_at": None,
            "is_deleted": False,
            "deleted_at": None,
            "client_message_id": client_message_id,
        }
        await self.collection.insert_one(doc)
        doc["_id"] = str(message_id)
        return doc

    async def find_by_client_id(self, conversation_id: str, sender_id: str, client_message_id: str) -> Optional[MessageDocument]:
        doc = await self.collection.find_one(
            {"conversation_id": conversation_id, "sender_id": sender_id, "client_message_id": client_message_id}
        )
        return self._normalize(doc)

    async def get(self, message_id: str) -> Optional[MessageDocument]:
        oid = to_object_id(message_id)
        if oid is None:
            return None
        return self._normalize(await self.collection.find_one({"_id": oid}))

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        before: Optional[int] = None,
        skip: int = 0,
    ) -> List[MessageDocument]:
        """Newest first. ``before`` is an exclusive seq cursor."""
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if before is not None:
            query["seq"] = {"$lt": before}
        cur = self.collection.find(query).sort([("seq", DESCENDING)])
        if skip:
            cur = cur.skip(skip)
        items = await cur.limit(limit).to_list(length=limit)
        return [self._normalize(it) for it in items]

    async def mark_read(self, conversation_id: str, receiver_id: str) -> int:
        result = await self.collection.update_many(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "is_read": False},
            {"$set": {"is_read": True, "read_at": utc_now()}},
        )
        return result.modified_count or 0

    async def soft_delete(self, message_id: str, sender_id: str) -> Optional[MessageDocument]:
        oid = to_object_id(message_id)
        if oid is None:
            return None
        result = await self.collection.update_one(
            {"_id": oid, "sender_id": sender_id},
            {
                "$set": {
                    "content": DELETED_PLACEHOLDER,
                    "file_url": None,
                    "file_name": None,
                    "file_size": None,
                    "is_deleted": True,
                    "deleted_at": utc_now(),
                }
            },
        )
        if not result.matched_count:
            return None
        return await self.get(message_id)

    async def search(self, conversation_ids: List[str], term: str, limit: int = 50) -> List[MessageDocument]:
        if not conversation_ids:
            return []
        query = {
            "conversation_id": {"$in": conversation_ids},
            "is_deleted": False,
            "content": {"$regex": re.escape(term), "$options": "i"},
        }
        cur = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        return [self._normalize(it) for it in await cur.to_list(length=limit)]

    @staticmethod
    def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc["_id"] = str(doc["_id"])
        return doc
