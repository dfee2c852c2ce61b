"""
Client-side state machine for one open conversation.

    IDLE -> LOADING_HISTORY -> READY <-> SENDING
                 any state -> DISCONNECTED -> READY (after reconciliation)

The controller never talks to a socket directly. It is given an ``emit``
coroutine for outbound live events and a ``HistorySource`` for pages, and the
owner feeds inbound live events to ``handle_event``.
"""

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from rapidgig_chat.core.logging_config import get_logger
from rapidgig_chat.realtime import events

logger = get_logger(__name__)

TYPING_QUIET_SECONDS = 3.0
PEER_TYPING_TIMEOUT_SECONDS = 10.0
DEFAULT_PAGE_SIZE = 50

Emit = Callable[[str, Any], Awaitable[None]]


class ControllerState(str, Enum):
    IDLE = "idle"
    LOADING_HISTORY = "loading_history"
    READY = "ready"
    SENDING = "sending"
    DISCONNECTED = "disconnected"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


@dataclass
class HistoryPage:
    items: List[Dict[str, Any]]  # chronological
    next_cursor: Optional[int] = None
    has_more: bool = False


class HistorySource(Protocol):
    async def fetch_page(self, conversation_id: str, before: Optional[int], limit: int) -> HistoryPage:
        ...


@dataclass
class ViewMessage:
    sender_id: str
    content: str
    status: MessageStatus
    id: Optional[str] = None
    seq: Optional[int] = None
    client_message_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def from_server(cls, data: Dict[str, Any], status: MessageStatus) -> "ViewMessage":
        if data.get("is_read"):
            status = MessageStatus.READ
        return cls(
            id=data["id"],
            seq=data["seq"],
            sender_id=data["sender_id"],
            content=data.get("content", ""),
            client_message_id=data.get("client_message_id"),
            status=status,
            payload=data,
        )


class ConversationController:

    def __init__(
        self,
        user_id: str,
        emit: Emit,
        history: HistorySource,
        page_size: int = DEFAULT_PAGE_SIZE,
        typing_quiet_seconds: float = TYPING_QUIET_SECONDS,
        peer_typing_timeout: float = PEER_TYPING_TIMEOUT_SECONDS,
    ) -> None:
        self.user_id = user_id
        self._emit = emit
        self._history = history
        self.page_size = page_size
        self.typing_quiet_seconds = typing_quiet_seconds
        self.peer_typing_timeout = peer_typing_timeout

        self.state = ControllerState.IDLE
        self.conversation_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.peer_typing = False
        self.peer_online: Optional[bool] = None
        self.has_more = False
        self._next_cursor: Optional[int] = None
        self._confirmed: Dict[str, ViewMessage] = {}
        self._pending: "OrderedDict[str, ViewMessage]" = OrderedDict()
        self._loading_older = False
        # bumped on every reset; fetches started under an older value are discarded
        self._generation = 0
        self._typing_active = False
        self._typing_timer: Optional[asyncio.Task] = None
        self._peer_typing_timer: Optional[asyncio.Task] = None

    # ---- view ----

    @property
    def messages(self) -> List[ViewMessage]:
        """Confirmed messages in seq order, then local pending/failed ones in send order."""
        confirmed = sorted(self._confirmed.values(), key=lambda m: m.seq)
        return confirmed + list(self._pending.values())

    @property
    def connected(self) -> bool:
        return self.state is not ControllerState.DISCONNECTED

    # ---- lifecycle ----

    async def open(self, conversation_id: str, peer_id: Optional[str] = None) -> None:
        self._reset()
        generation = self._generation
        self.conversation_id = conversation_id
        self.peer_id = peer_id
        self.state = ControllerState.LOADING_HISTORY
        await self._emit(events.JOIN_CONVERSATION, {"conversationId": conversation_id})
        page = await self._history.fetch_page(conversation_id, None, self.page_size)
        if self._is_stale(generation):
            return
        self._apply_page(page, older=True)
        self.state = ControllerState.READY
        await self.mark_read()

    async def close(self) -> None:
        await self._stop_typing(emit=self.connected)
        self._cancel_peer_typing_timer()
        if self.conversation_id and self.connected:
            await self._emit(events.LEAVE_CONVERSATION, {"conversationId": self.conversation_id})
        self._reset()

    def on_disconnect(self) -> None:
        self.state = ControllerState.DISCONNECTED
        self._typing_active = False
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None
        self._set_peer_typing(False)

    async def on_reconnect(self) -> None:
        """Rejoin, re-fetch the newest page to fill any gap, then resend unacknowledged sends."""
        if self.conversation_id is None:
            self.state = ControllerState.IDLE
            return
        generation = self._generation
        conversation_id = self.conversation_id
        self.state = ControllerState.LOADING_HISTORY
        await self._emit(events.JOIN_CONVERSATION, {"conversationId": conversation_id})
        known_max = max((m.seq for m in self._confirmed.values()), default=None)
        before: Optional[int] = None
        while True:
            page = await self._history.fetch_page(conversation_id, before, self.page_size)
            if self._is_stale(generation):
                return
            self._apply_page(page, older=known_max is None)
            oldest = page.items[0]["seq"] if page.items else None
            # stop once the fetched range overlaps what the view already had
            if known_max is None or oldest is None or not page.has_more or oldest <= known_max + 1:
                break
            before = page.next_cursor
        self.state = ControllerState.READY
        # the server dedupes on client_message_id, so a resend cannot double-post
        for pending in list(self._pending.values()):
            if pending.status is MessageStatus.PENDING:
                await self._emit_send(pending)
        await self.mark_read()

    # ---- history ----

    async def load_older(self, at_top: bool = True) -> bool:
        """Fetch the previous page when scrolled to the top. Single-flight."""
        if not at_top or not self.has_more or self._loading_older:
            return False
        if self.state is not ControllerState.READY or self.conversation_id is None:
            return False
        generation = self._generation
        self._loading_older = True
        try:
            page = await self._history.fetch_page(self.conversation_id, self._next_cursor, self.page_size)
        finally:
            if not self._is_stale(generation):
                self._loading_older = False
        if self._is_stale(generation):
            logger.debug("Dropping older page fetched for a conversation that is no longer open")
            return False
        self._apply_page(page, older=True)
        return True

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _apply_page(self, page: HistoryPage, older: bool) -> None:
        """Merge a page. Only pages extending the view backwards move the pagination cursor."""
        for item in page.items:
            self._merge_server_message(item, MessageStatus.SENT)
        if older:
            self.has_more = page.has_more
            self._next_cursor = page.next_cursor

    def _merge_server_message(self, data: Dict[str, Any], status: MessageStatus) -> ViewMessage:
        client_id = data.get("client_message_id")
        if client_id and client_id in self._pending:
            del self._pending[client_id]
        existing = self._confirmed.get(data["id"])
        incoming = ViewMessage.from_server(data, status)
        if existing is not None:
            # never downgrade a message we already know is further along
            order = list(MessageStatus)
            if existing.status is not MessageStatus.FAILED and order.index(existing.status) > order.index(incoming.status):
                incoming.status = existing.status
        self._confirmed[incoming.id] = incoming
        return incoming

    # ---- sending ----

    async def send(self, content: str, receiver_id: Optional[str] = None) -> str:
        content = content.strip()
        if not content:
            raise ValueError("Message content cannot be empty")
        if self.conversation_id is None:
            raise RuntimeError("No conversation is open")
        pending = ViewMessage(
            sender_id=self.user_id,
            content=content,
            status=MessageStatus.PENDING,
            client_message_id=uuid.uuid4().hex,
            payload={"receiverId": receiver_id or self.peer_id},
        )
        self._pending[pending.client_message_id] = pending
        await self._stop_typing(emit=self.connected)
        if not self.connected:
            pending.status = MessageStatus.FAILED
            pending.error = "disconnected"
            return pending.client_message_id
        self.state = ControllerState.SENDING
        try:
            await self._emit_send(pending)
        finally:
            if self.state is ControllerState.SENDING:
                self.state = ControllerState.READY
        return pending.client_message_id

    async def retry(self, client_message_id: str) -> bool:
        pending = self._pending.get(client_message_id)
        if pending is None or pending.status is not MessageStatus.FAILED or not self.connected:
            return False
        pending.status = MessageStatus.PENDING
        pending.error = None
        await self._emit_send(pending)
        return True

    async def _emit_send(self, pending: ViewMessage) -> None:
        data = {
            "conversationId": self.conversation_id,
            "content": pending.content,
            "messageType": "text",
            "clientMessageId": pending.client_message_id,
        }
        if pending.payload.get("receiverId"):
            data["receiverId"] = pending.payload["receiverId"]
        try:
            await self._emit(events.SEND_MESSAGE, data)
        except ConnectionError as exc:
            pending.status = MessageStatus.FAILED
            pending.error = str(exc) or "send failed"
            logger.warning("Send of %s failed: %s", pending.client_message_id, exc)

    async def mark_read(self) -> None:
        if self.conversation_id and self.connected:
            await self._emit(events.MARK_MESSAGES_READ, {"conversationId": self.conversation_id})

    # ---- typing ----

    async def on_keystroke(self) -> None:
        """Trailing-edge debounce: one typing_start per burst, typing_stop after the quiet period."""
        if self.conversation_id is None or not self.connected:
            return
        if not self._typing_active:
            self._typing_active = True
            await self._emit(events.TYPING_START, {"conversationId": self.conversation_id})
        if self._typing_timer is not None:
            self._typing_timer.cancel()
        self._typing_timer = asyncio.create_task(self._typing_quiet_timer())

    async def _typing_quiet_timer(self) -> None:
        await asyncio.sleep(self.typing_quiet_seconds)
        self._typing_timer = None
        await self._stop_typing(emit=self.connected)

    async def _stop_typing(self, emit: bool) -> None:
        if self._typing_timer is not None and self._typing_timer is not asyncio.current_task():
            self._typing_timer.cancel()
            self._typing_timer = None
        if not self._typing_active:
            return
        self._typing_active = False
        if emit and self.conversation_id:
            await self._emit(events.TYPING_STOP, {"conversationId": self.conversation_id})

    def _set_peer_typing(self, is_typing: bool) -> None:
        self.peer_typing = is_typing
        self._cancel_peer_typing_timer()
        if is_typing:
            self._peer_typing_timer = asyncio.create_task(self._expire_peer_typing())

    async def _expire_peer_typing(self) -> None:
        await asyncio.sleep(self.peer_typing_timeout)
        self.peer_typing = False
        self._peer_typing_timer = None

    def _cancel_peer_typing_timer(self) -> None:
        if self._peer_typing_timer is not None and self._peer_typing_timer is not asyncio.current_task():
            self._peer_typing_timer.cancel()
        self._peer_typing_timer = None

    # ---- inbound live events ----

    async def handle_event(self, event: str, data: Any) -> None:
        if event == events.NEW_MESSAGE:
            if data.get("conversation_id") != self.conversation_id:
                return
            mine = data.get("sender_id") == self.user_id
            self._merge_server_message(data, MessageStatus.SENT)
            if not mine:
                self._set_peer_typing(False)
                if self.state in (ControllerState.READY, ControllerState.SENDING):
                    await self.mark_read()
        elif event == events.MESSAGE_ACK:
            message = data.get("message") or {}
            if message.get("conversation_id") != self.conversation_id:
                return
            status = MessageStatus.DELIVERED if data.get("delivered") else MessageStatus.SENT
            self._merge_server_message(message, status)
        elif event == events.ERROR:
            client_id = data.get("clientMessageId")
            pending = self._pending.get(client_id) if client_id else None
            if pending is not None:
                pending.status = MessageStatus.FAILED
                pending.error = data.get("message") or data.get("code")
        elif event == events.MESSAGES_READ:
            if data.get("conversationId") != self.conversation_id or data.get("readBy") == self.user_id:
                return
            for msg in self._confirmed.values():
                if msg.sender_id == self.user_id:
                    msg.status = MessageStatus.READ
        elif event == events.USER_TYPING:
            if data.get("conversationId") == self.conversation_id and data.get("userId") != self.user_id:
                self._set_peer_typing(bool(data.get("isTyping")))
        elif event == events.USER_OFFLINE:
            if data.get("userId") == self.peer_id:
                self.peer_online = False
                self._set_peer_typing(False)
        elif event == events.ONLINE_USERS:
            if self.peer_id is not None:
                self.peer_online = self.peer_id in data

    def _reset(self) -> None:
        self._generation += 1
        self.state = ControllerState.IDLE
        self.conversation_id = None
        self.peer_typing = False
        self.has_more = False
        self._next_cursor = None
        self._confirmed.clear()
        self._pending.clear()
        self._loading_older = False
        self._typing_active = False
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None
        self._cancel_peer_typing_timer()
