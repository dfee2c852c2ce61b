"""
Shared pytest fixtures: an in-memory Motor database, the thread store,
notification fan-out, presence tracker and a coordinator wired to them.
"""

import json
import os
from typing import Any, List, Optional

os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from mongomock_motor import AsyncMongoMockClient

from rapidgig_chat.realtime.connection import LiveConnection
from rapidgig_chat.realtime.coordinator import DeliveryCoordinator
from rapidgig_chat.realtime.presence import PresenceTracker
from rapidgig_chat.repositories.conversation_repository import ConversationRepository
from rapidgig_chat.repositories.device_repository import DeviceRepository
from rapidgig_chat.repositories.message_repository import MessageRepository
from rapidgig_chat.repositories.notification_repository import NotificationRepository
from rapidgig_chat.schemas.chat import SendMessagePayload
from rapidgig_chat.services.chat_service import ChatService
from rapidgig_chat.services.notification_service import NotificationService
from rapidgig_chat.utils.last_seen import NoopLastSeenStore
from rapidgig_chat.utils.notifications import NoopPush

ALICE = "alice"
BOB = "bob"
CAROL = "carol"


class FakeWebSocket:
    """Records every frame; optionally fails on send like a dropped socket."""

    def __init__(self, timeline: Optional[list] = None, fail: bool = False, query_params=None, headers=None) -> None:
        self.sent: List[dict] = []
        self.timeline = timeline if timeline is not None else []
        self.fail = fail
        self.accepted = False
        self.closed_with: Optional[int] = None
        self.query_params = query_params or {}
        self.headers = headers or {}

    async def accept(self) -> None:
        self.accepted = True

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        frame = json.loads(text)
        self.sent.append(frame)
        self.timeline.append((self, frame))

    def events(self, name: Optional[str] = None) -> List[Any]:
        return [f["data"] for f in self.sent if name is None or f["event"] == name]


@pytest.fixture
def db():
    return AsyncMongoMockClient(tz_aware=True)["rapidgig_test"]


@pytest.fixture
async def chat_service(db):
    service = ChatService(MessageRepository(db), ConversationRepository(db))
    await service.ensure_indexes()
    return service


@pytest.fixture
async def notification_service(db):
    service = NotificationService(NotificationRepository(db), DeviceRepository(db), NoopPush())
    await service.ensure_indexes()
    return service


@pytest.fixture
def presence():
    return PresenceTracker()


@pytest.fixture
def coordinator(chat_service, presence, notification_service):
    return DeliveryCoordinator(chat_service, presence, notification_service, NoopLastSeenStore())


@pytest.fixture
def timeline():
    return []


@pytest.fixture
def connect(presence, timeline):
    """Register a fake live connection for a user and return it."""

    def _connect(user_id: str, fail: bool = False) -> LiveConnection:
        conn = LiveConnection(FakeWebSocket(timeline=timeline, fail=fail), user_id)
        presence.register(user_id, conn)
        return conn

    return _connect


def send_payload(**kwargs) -> SendMessagePayload:
    return SendMessagePayload.model_validate(kwargs)
