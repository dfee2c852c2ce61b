from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from starlette.requests import HTTPConnection

from rapidgig_chat.core.config import get_settings
from rapidgig_chat.core.logging_config import get_logger

logger = get_logger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> AsyncIOMotorDatabase:
    global _client
    settings = get_settings()
    if _client is None:
        _client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
        logger.info("MongoDB client created for database %s", settings.mongodb_db)
    return _client[settings.mongodb_db]


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB client closed")


def mongo_db_dependency(conn: HTTPConnection) -> AsyncIOMotorDatabase:
    # Works for both HTTP requests and websockets.
    return conn.app.state.db
