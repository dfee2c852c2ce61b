import json

import pytest

from rapidgig_chat.core.errors import AuthenticationError
from rapidgig_chat.realtime.connection import (
    ConnectionState,
    InvalidTransition,
    LiveConnection,
    PendingConnection,
    Room,
    token_from_handshake,
)
from rapidgig_chat.realtime.events import LiveEvent, MalformedEvent
from rapidgig_chat.utils.security import create_access_token
from tests.conftest import FakeWebSocket


def test_token_is_read_from_query_or_bearer_header():
    assert token_from_handshake(FakeWebSocket(query_params={"token": "abc"})) == "abc"
    assert token_from_handshake(FakeWebSocket(headers={"authorization": "Bearer xyz"})) == "xyz"
    assert token_from_handshake(FakeWebSocket(headers={"authorization": "Basic xyz"})) is None
    assert token_from_handshake(FakeWebSocket()) is None


def test_authenticate_yields_live_connection_for_token_subject():
    ws = FakeWebSocket(query_params={"token": create_access_token("alice")})

    conn = PendingConnection(ws).authenticate()

    assert conn.user_id == "alice"
    assert conn.state is ConnectionState.AUTHENTICATED
    assert conn.room is None


@pytest.mark.parametrize("params", [{}, {"token": "not-a-jwt"}])
def test_authenticate_rejects_missing_or_bad_token(params):
    with pytest.raises(AuthenticationError):
        PendingConnection(FakeWebSocket(query_params=params)).authenticate()


def test_room_transitions():
    conn = LiveConnection(FakeWebSocket(), "alice")
    first = Room("c1", ("alice", "bob"))
    second = Room("c2", ("alice", "carol"))

    conn.join(first)
    assert conn.state is ConnectionState.ROOM_JOINED
    assert conn.in_room_with("bob")

    conn.join(second)
    assert conn.room == second
    assert not conn.in_room_with("bob")

    conn.leave()
    assert conn.state is ConnectionState.AUTHENTICATED
    assert conn.room is None

    with pytest.raises(InvalidTransition):
        conn.leave()


def test_disconnected_is_terminal():
    conn = LiveConnection(FakeWebSocket(), "alice")
    conn.join(Room("c1", ("alice", "bob")))

    conn.mark_disconnected()
    conn.mark_disconnected()

    assert not conn.is_open
    assert conn.room is None
    with pytest.raises(InvalidTransition):
        conn.join(Room("c1", ("alice", "bob")))


async def test_send_writes_event_frame_and_refuses_after_disconnect():
    ws = FakeWebSocket()
    conn = LiveConnection(ws, "alice")

    await conn.send("online_users", ["bob"])
    assert ws.sent == [{"event": "online_users", "data": ["bob"]}]

    conn.mark_disconnected()
    with pytest.raises(InvalidTransition):
        await conn.send("online_users", [])


def test_event_frames_round_trip_and_reject_garbage():
    frame = LiveEvent.from_json(json.dumps({"event": "typing_start", "data": {"conversationId": "c1"}}))
    assert frame.event == "typing_start"
    assert frame.data == {"conversationId": "c1"}

    for raw in ["{not json", "[]", json.dumps({"data": 1})]:
        with pytest.raises(MalformedEvent):
            LiveEvent.from_json(raw)
