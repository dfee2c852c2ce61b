import asyncio
import weakref
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi import WebSocket
from pydantic import ValidationError

from rapidgig_chat.core.errors import AuthenticationError, ChatError, ChatPermissionError, TransientIOError
from rapidgig_chat.core.logging_config import get_logger
from rapidgig_chat.realtime import events
from rapidgig_chat.realtime.connection import LiveConnection, PendingConnection, Room
from rapidgig_chat.realtime.events import LiveEvent, MalformedEvent
from rapidgig_chat.realtime.presence import PresenceTracker
from rapidgig_chat.schemas.chat import ConversationPublic, ConversationRef, MessagePublic, SendMessagePayload
from rapidgig_chat.services.chat_service import PREVIEW_LENGTH, ChatService
from rapidgig_chat.services.notification_service import NotificationService
from rapidgig_chat.utils.last_seen import LastSeenStore

logger = get_logger(__name__)


class DeliveryCoordinator:
    """
    Live channel server.

    Bridges the durable thread store and the connected clients: every state
    change goes through ``ChatService`` first and is only then pushed to the
    participants' connections tracked by ``PresenceTracker``.
    """

    def __init__(self, store: ChatService, presence: PresenceTracker, notifications: NotificationService, last_seen: LastSeenStore) -> None:
        self.store = store
        self.presence = presence
        self.notifications = notifications
        self.last_seen = last_seen
        self._conversation_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers: Dict[str, Callable[[LiveConnection, Any], Awaitable[None]]] = {
            events.JOIN_CONVERSATION: self._on_join,
            events.LEAVE_CONVERSATION: self._on_leave,
            events.SEND_MESSAGE: self._on_send,
            events.MARK_MESSAGES_READ: self._on_mark_read,
            events.TYPING_START: self._on_typing_start,
            events.TYPING_STOP: self._on_typing_stop,
            events.GET_ONLINE_USERS: self._on_get_online_users,
        }

    # ---- connection lifecycle ----

    async def open_connection(self, websocket: WebSocket) -> LiveConnection:
        """Authenticate the handshake, accept it and register the handle."""
        conn = PendingConnection(websocket).authenticate()
        await websocket.accept()
        came_online = self.presence.register(conn.user_id, conn)
        logger.info("Live connection %s opened for %s (first=%s, total=%d)", conn.id[:8], conn.user_id, came_online, self.presence.connection_count)
        return conn

    async def close_connection(self, conn: LiveConnection) -> None:
        conn.mark_disconnected()
        went_offline = self.presence.unregister(conn.user_id, conn)
        logger.info("Live connection %s closed for %s (offline=%s)", conn.id[:8], conn.user_id, went_offline)
        if went_offline:
            await self.last_seen.touch(conn.user_id)
            await self._broadcast_offline(conn.user_id)

    async def shutdown(self) -> None:
        for conn in self.presence.clear():
            conn.mark_disconnected()
            try:
                await conn.websocket.close(code=1001)
            except RuntimeError:
                # already closed by the client
                pass

    async def _broadcast_offline(self, user_id: str) -> None:
        # The departed handle is already unregistered, so it is never a target here.
        for peer in self.presence.all_connections():
            if peer.user_id != user_id and peer.in_room_with(user_id):
                await self._send(peer, events.USER_OFFLINE, {"userId": user_id})

    # ---- operations ----

    async def join_conversation(self, conn: LiveConnection, conversation_id: str) -> ConversationPublic:
        convo = await self.store.get_conversation(conversation_id, conn.user_id)
        conn.join(Room(convo.id, tuple(convo.participants)))
        logger.debug("%s joined conversation %s", conn.user_id, convo.id)
        return convo

    async def leave_conversation(self, conn: LiveConnection, conversation_id: Optional[str] = None) -> None:
        if conn.room is None:
            return
        if conversation_id is None or conn.room.conversation_id == conversation_id:
            conn.leave()

    async def send_message(self, conn: LiveConnection, payload: SendMessagePayload) -> MessagePublic:
        message, delivered = await self.post_message(
            conn.user_id,
            conversation_id=payload.conversation_id,
            receiver_id=payload.receiver_id,
            content=payload.content,
            message_type=payload.message_type,
            file_url=payload.file_url,
            file_name=payload.file_name,
            file_size=payload.file_size,
            client_message_id=payload.client_message_id,
            origin=conn,
        )
        await self._send(
            conn,
            events.MESSAGE_ACK,
            {"clientMessageId": payload.client_message_id, "message": message.model_dump(mode="json"), "delivered": delivered},
        )
        return message

    async def post_message(
        self,
        sender_id: str,
        conversation_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        origin: Optional[LiveConnection] = None,
        **fields: Any,
    ) -> Tuple[MessagePublic, bool]:
        """
        Append a message and push it to the live participants.

        Shared by the live channel and the REST attachment path. Returns the
        stored message and whether any recipient connection received it.
        """
        if conversation_id:
            convo = await self.store.get_conversation(conversation_id, sender_id)
        elif receiver_id:
            convo = await self.store.get_or_create_conversation(sender_id, receiver_id)
        else:
            raise ValueError("conversationId or receiverId is required")
        if receiver_id and receiver_id != convo.other_participant(sender_id):
            raise ChatPermissionError("receiverId is not a participant of this conversation")
        # The write and its fan-out finish even if the sender disconnects mid-call.
        return await asyncio.shield(self._append_and_deliver(convo.id, sender_id, origin, fields))

    async def _append_and_deliver(
        self, conversation_id: str, sender_id: str, origin: Optional[LiveConnection], fields: Dict[str, Any]
    ) -> Tuple[MessagePublic, bool]:
        async with self._lock_for(conversation_id):
            message = await self.store.append_message(conversation_id, sender_id, **fields)
            delivered = await self.deliver(message, origin=origin)
        return message, delivered

    async def deliver(self, message: MessagePublic, origin: Optional[LiveConnection] = None) -> bool:
        payload = message.model_dump(mode="json")
        delivered = 0
        for conn in self.presence.connections_for(message.receiver_id):
            if await self._send(conn, events.NEW_MESSAGE, payload):
                delivered += 1
        # keep the sender's other tabs in sync; the issuing one gets the ack instead
        for conn in self.presence.connections_for(message.sender_id):
            if conn is not origin:
                await self._send(conn, events.NEW_MESSAGE, payload)
        if delivered:
            logger.debug("Message %s delivered to %d connection(s) of %s", message.id, delivered, message.receiver_id)
            return True
        try:
            await self.notifications.record_undelivered(
                message.receiver_id,
                message.conversation_id,
                message.sender_id,
                message.content[:PREVIEW_LENGTH] if message.content else message.file_name,
                message_id=message.id,
            )
        except TransientIOError as exc:
            # message is already durable; the unread counter still reflects it
            logger.warning("Could not record notification for message %s: %s", message.id, exc)
        return False

    async def mark_read(self, conn: LiveConnection, conversation_id: str) -> int:
        return await self.mark_read_for(conn.user_id, conversation_id)

    async def mark_read_for(self, reader_id: str, conversation_id: str) -> int:
        """Mark read, clear the pending notification, tell the other participant."""
        convo = await self.store.get_conversation(conversation_id, reader_id)
        # serialized with appends to this conversation
        async with self._lock_for(convo.id):
            updated = await self.store.mark_read(convo.id, reader_id)
            await self.notifications.clear(reader_id, convo.id)
            if updated:
                # the reader's own other connections are not told
                other = convo.other_participant(reader_id)
                for peer in self.presence.connections_for(other):
                    await self._send(peer, events.MESSAGES_READ, {"conversationId": convo.id, "readBy": reader_id})
        return updated

    async def typing(self, conn: LiveConnection, conversation_id: str, is_typing: bool) -> None:
        if conn.room is not None and conn.room.conversation_id == conversation_id:
            participants = conn.room.participants
        else:
            participants = tuple((await self.store.get_conversation(conversation_id, conn.user_id)).participants)
        other = participants[1] if participants[0] == conn.user_id else participants[0]
        data = {"conversationId": conversation_id, "userId": conn.user_id, "isTyping": is_typing}
        for peer in self.presence.connections_for(other):
            await self._send(peer, events.USER_TYPING, data)

    async def online_users(self, conn: LiveConnection, user_ids: List[str]) -> List[str]:
        online = self.presence.online_users(user_ids)
        await self._send(conn, events.ONLINE_USERS, online)
        return online

    # ---- inbound frames ----

    async def dispatch(self, conn: LiveConnection, raw: str) -> None:
        """Route one inbound frame. Errors go back to the issuing connection only."""
        event_name: Optional[str] = None
        data: Any = None
        try:
            frame = LiveEvent.from_json(raw)
            event_name, data = frame.event, frame.data
            handler = self._handlers.get(event_name)
            if handler is None:
                raise ValueError(f"Unknown event '{event_name}'")
            await handler(conn, data)
        except AuthenticationError:
            raise
        except ChatError as exc:
            await self._send_error(conn, exc.code, exc.message, event_name, data)
        except (ValidationError, MalformedEvent, ValueError) as exc:
            await self._send_error(conn, "invalid_payload", str(exc), event_name, data)

    async def _on_join(self, conn: LiveConnection, data: Any) -> None:
        await self.join_conversation(conn, ConversationRef.model_validate(data).conversation_id)

    async def _on_leave(self, conn: LiveConnection, data: Any) -> None:
        ref = ConversationRef.model_validate(data) if data else None
        await self.leave_conversation(conn, ref.conversation_id if ref else None)

    async def _on_send(self, conn: LiveConnection, data: Any) -> None:
        await self.send_message(conn, SendMessagePayload.model_validate(data))

    async def _on_mark_read(self, conn: LiveConnection, data: Any) -> None:
        await self.mark_read(conn, ConversationRef.model_validate(data).conversation_id)

    async def _on_typing_start(self, conn: LiveConnection, data: Any) -> None:
        await self.typing(conn, ConversationRef.model_validate(data).conversation_id, True)

    async def _on_typing_stop(self, conn: LiveConnection, data: Any) -> None:
        await self.typing(conn, ConversationRef.model_validate(data).conversation_id, False)

    async def _on_get_online_users(self, conn: LiveConnection, data: Any) -> None:
        if not isinstance(data, list) or not all(isinstance(uid, str) for uid in data):
            raise ValueError("get_online_users expects a list of user ids")
        await self.online_users(conn, data)

    # ---- helpers ----

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._conversation_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._conversation_locks[conversation_id] = lock
        return lock

    async def _send(self, conn: LiveConnection, event: str, data: Any) -> bool:
        """Push one event; a handle that fails is unregistered and reported False."""
        if not conn.is_open:
            return False
        try:
            await conn.send(event, data)
            return True
        except Exception as exc:
            logger.warning("Dropping dead connection %s of %s: %s", conn.id[:8], conn.user_id, exc)
            await self.close_connection(conn)
            return False

    async def _send_error(self, conn: LiveConnection, code: str, message: str, event_name: Optional[str], data: Any) -> None:
        body: Dict[str, Any] = {"code": code, "message": message, "event": event_name}
        if isinstance(data, dict) and data.get("clientMessageId"):
            body["clientMessageId"] = data["clientMessageId"]
        logger.debug("Rejected %s from %s: %s", event_name, conn.user_id, code)
        await self._send(conn, events.ERROR, body)
