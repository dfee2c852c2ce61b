from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from rapidgig_chat.models.conversation import ConversationDocument


def utc_now() -> datetime:
    # BSON dates are millisecond precision; keep cursors exact.
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def participant_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a, user_b]))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participant_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> ConversationDocument:
        participants = sorted([user_a, user_b])
        key = participant_key(user_a, user_b)
        now = utc_now()
        # participant_key comes from the filter on insert
        doc: Dict[str, Any] = {
            "participants": participants,
            "unread_counters": {participants[0]: 0, participants[1]: 0},
            "message_seq": 0,
            "last_message_id": None,
            "last_message_seq": 0,
            "last_message_at": now,
            "last_message_preview": None,
            "last_message_sender_id": None,
            "created_at": now,
        }
        try:
            convo = await self.collection.find_one_and_update(
                {"participant_key": key},
                {"$setOnInsert": doc},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost the upsert race to the other participant; the winner's row is there now.
            convo = await self.collection.find_one({"participant_key": key})
        return self._normalize(convo)

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        return self._normalize(await self.collection.find_one({"_id": oid}))

    async def allocate_seq(self, conversation_id: str, sender_id: str) -> Optional[int]:
        """Atomically take the next ordering key. None when the sender is not a participant."""
        convo = await self.collection.find_one_and_update(
            {"_id": ObjectId(conversation_id), "participants": sender_id},
            {"$inc": {"message_seq": 1}},
            projection={"message_seq": 1},
            return_document=ReturnDocument.AFTER,
        )
        if convo is None:
            return None
        return int(convo["message_seq"])

    async def update_on_new_message(
        self,
        conversation_id: str,
        message_id: str,
        seq: int,
        sent_at: datetime,
        preview: str,
        sender_id: str,
        receiver_id: str,
    ) -> None:
        oid = ObjectId(conversation_id)
        await self.collection.update_one(
            {"_id": oid},
            {"$inc": {f"unread_counters.{receiver_id}": 1}},
        )
        # only move the pointer forward; a slower older append must not win
        await self.collection.update_one(
            {"_id": oid, "last_message_seq": {"$lt": seq}},
            {
                "$set": {
                    "last_message_id": message_id,
                    "last_message_seq": seq,
                    "last_message_at": sent_at,
                    "last_message_preview": preview,
                    "last_message_sender_id": sender_id,
                },
            },
        )

    async def decrement_unread(self, conversation_id: str, user_id: str, count: int) -> None:
        """Take ``count`` read messages off the user's counter, floored at zero."""
        if count <= 0:
            return
        oid = ObjectId(conversation_id)
        field = f"unread_counters.{user_id}"
        await self.collection.update_one({"_id": oid}, {"$inc": {field: -count}})
        await self.collection.update_one({"_id": oid, field: {"$lt": 0}}, {"$set": {field: 0}})

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:object_id_hex
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
                query["$or"] = [
                    {"last_message_at": {"$lt": ts}},
                    {"last_message_at": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId) as exc:
                raise ValueError(f"Invalid cursor: {cursor}") from exc

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = [self._normalize(it) for it in await cursor_db.to_list(length=limit)]
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_at = last["last_message_at"]
            if last_at.tzinfo is None:
                last_at = last_at.replace(tzinfo=timezone.utc)
            next_cursor = f"{int(last_at.timestamp() * 1000)}:{last['_id']}"
        return items, next_cursor

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        docs = await self.collection.find({"participants": user_id}, projection={"_id": 1}).to_list(length=None)
        return [str(doc["_id"]) for doc in docs]

    async def unread_total(self, user_id: str) -> int:
        docs = await self.collection.find({"participants": user_id}, projection={"unread_counters": 1}).to_list(length=None)
        return sum(int((doc.get("unread_counters") or {}).get(user_id, 0)) for doc in docs)

    @staticmethod
    def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc["_id"] = str(doc["_id"])
        return doc
