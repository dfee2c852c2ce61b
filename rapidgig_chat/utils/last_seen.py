from datetime import datetime, timezone
from typing import Optional, Protocol

import redis.asyncio as redis

from rapidgig_chat.core.config import Settings
from rapidgig_chat.core.logging_config import get_logger

logger = get_logger(__name__)


class LastSeenStore(Protocol):
    enabled: bool

    async def touch(self, user_id: str, when: Optional[datetime] = None) -> None:
        ...

    async def get(self, user_id: str) -> Optional[datetime]:
        ...

    async def close(self) -> None:
        ...


class NoopLastSeenStore:

    enabled = False

    async def touch(self, user_id: str, when: Optional[datetime] = None) -> None:
        return

    async def get(self, user_id: str) -> Optional[datetime]:
        return None

    async def close(self) -> None:
        return


class RedisLastSeenStore:
    """Keeps ``last_seen:<user_id>`` as epoch milliseconds."""

    enabled = True

    def __init__(self, client: "redis.Redis", ttl_seconds: int) -> None:
        self._redis = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int) -> "RedisLastSeenStore":
        return cls(redis.from_url(url, decode_responses=True), ttl_seconds)

    async def touch(self, user_id: str, when: Optional[datetime] = None) -> None:
        when = when or datetime.now(timezone.utc)
        try:
            await self._redis.set(f"last_seen:{user_id}", int(when.timestamp() * 1000), ex=self._ttl)
        except redis.RedisError as exc:
            # last-seen is advisory; presence itself is in-process
            logger.warning("Failed to record last_seen for %s: %s", user_id, exc)

    async def get(self, user_id: str) -> Optional[datetime]:
        try:
            raw = await self._redis.get(f"last_seen:{user_id}")
        except redis.RedisError as exc:
            logger.warning("Failed to read last_seen for %s: %s", user_id, exc)
            return None
        if raw is None:
            return None
        return datetime.fromtimestamp(int(raw) / 1000.0, tz=timezone.utc)

    async def close(self) -> None:
        await self._redis.aclose()


def build_last_seen_store(settings: Settings) -> LastSeenStore:
    if not settings.redis_url:
        return NoopLastSeenStore()
    return RedisLastSeenStore.from_url(settings.redis_url, settings.last_seen_ttl_seconds)
