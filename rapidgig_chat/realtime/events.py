"""
Live channel wire format.

Every frame is a JSON text frame ``{"event": <name>, "data": <payload>}``.
Payload keys are camelCase except for serialized messages, which keep the
stored field names.
"""

import json
from dataclasses import dataclass
from typing import Any

from fastapi.encoders import jsonable_encoder

# client -> server
JOIN_CONVERSATION = "join_conversation"
LEAVE_CONVERSATION = "leave_conversation"
SEND_MESSAGE = "send_message"
MARK_MESSAGES_READ = "mark_messages_read"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
GET_ONLINE_USERS = "get_online_users"

# server -> client
NEW_MESSAGE = "new_message"
MESSAGES_READ = "messages_read"
USER_TYPING = "user_typing"
ONLINE_USERS = "online_users"
USER_OFFLINE = "user_offline"
MESSAGE_ACK = "message_ack"
ERROR = "error"


class MalformedEvent(ValueError):
    pass


@dataclass
class LiveEvent:
    event: str
    data: Any = None

    def to_json(self) -> str:
        return json.dumps({"event": self.event, "data": jsonable_encoder(self.data)})

    @classmethod
    def from_json(cls, raw: str) -> "LiveEvent":
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedEvent("Frame is not valid JSON") from exc
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            raise MalformedEvent("Frame must be an object with an 'event' name")
        return cls(event=frame["event"], data=frame.get("data"))
