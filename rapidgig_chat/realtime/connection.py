"""
Per-connection state machine for the live channel.

    CONNECTING -> AUTHENTICATED -> ROOM_JOINED(id) -> (ROOM_JOINED | AUTHENTICATED | DISCONNECTED)

A ``PendingConnection`` is the CONNECTING state. The only way to get a
``LiveConnection`` (and so to call any coordinator operation) is
``PendingConnection.authenticate``.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from fastapi import WebSocket

from rapidgig_chat.realtime.events import LiveEvent
from rapidgig_chat.utils.security import identity_from_token


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ROOM_JOINED = "room_joined"
    DISCONNECTED = "disconnected"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED},
    ConnectionState.AUTHENTICATED: {ConnectionState.ROOM_JOINED, ConnectionState.DISCONNECTED},
    ConnectionState.ROOM_JOINED: {ConnectionState.ROOM_JOINED, ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class Room:
    conversation_id: str
    participants: Tuple[str, str]


def token_from_handshake(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


class PendingConnection:

    state = ConnectionState.CONNECTING

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    def authenticate(self, verify: Callable[[Optional[str]], str] = identity_from_token) -> "LiveConnection":
        """Raises AuthenticationError when the handshake carries no valid token."""
        user_id = verify(token_from_handshake(self.websocket))
        return LiveConnection(self.websocket, user_id)


class LiveConnection:

    def __init__(self, websocket: Any, user_id: str) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.state = ConnectionState.AUTHENTICATED
        self.room: Optional[Room] = None

    def __repr__(self) -> str:
        return f"<LiveConnection {self.id[:8]} user={self.user_id} state={self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state is not ConnectionState.DISCONNECTED

    def _transition(self, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target

    def join(self, room: Room) -> None:
        self._transition(ConnectionState.ROOM_JOINED)
        self.room = room

    def leave(self) -> None:
        self._transition(ConnectionState.AUTHENTICATED)
        self.room = None

    def mark_disconnected(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        self._transition(ConnectionState.DISCONNECTED)
        self.room = None

    def in_room_with(self, user_id: str) -> bool:
        return self.room is not None and user_id in self.room.participants

    async def send(self, event: str, data: Any = None) -> None:
        if not self.is_open:
            raise InvalidTransition(f"send on {self.state.value} connection")
        await self.websocket.send_text(LiveEvent(event, data).to_json())
