from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from rapidgig_chat.models.device import DeviceDocument, PushPlatform
from rapidgig_chat.repositories.conversation_repository import utc_now


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("platform", ASCENDING), ("token", ASCENDING)], unique=True)

    async def register(self, user_id: str, platform: PushPlatform, token: str) -> DeviceDocument:
        await self.collection.update_one(
            {"user_id": user_id, "platform": platform, "token": token},
            {"$set": {"last_seen_at": utc_now()}},
            upsert=True,
        )
        return {"user_id": user_id, "platform": platform, "token": token}

    async def get_tokens(self, user_id: str, platform: Optional[str] = None) -> List[str]:
        query: Dict[str, Any] = {"user_id": user_id}
        if platform:
            query["platform"] = platform
        cur = self.collection.find(query, projection={"token": 1})
        items = await cur.to_list(length=100)
        return [it["token"] for it in items]
