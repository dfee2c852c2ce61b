from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


from rapidgig_chat.models.message import MessageType


class MessagePublic(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: MessageType = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    seq: int
    created_at: datetime
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_deleted: bool = False
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "MessagePublic":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class ConversationPublic(BaseModel):

    id: str
    participants: List[str]
    unread_counters: Dict[str, int] = Field(default_factory=dict)
    last_message_id: Optional[str] = None
    last_message_seq: int = 0
    last_message_at: datetime
    last_message_preview: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ConversationPublic":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def other_participant(self, user_id: str) -> str:
        a, b = self.participants
        return b if user_id == a else a

    def unread_for(self, user_id: str) -> int:
        return self.unread_counters.get(user_id, 0)


class ConversationSummary(BaseModel):
    """Conversation as seen by one participant (REST list view)."""

    id: str
    other_participant_id: str
    unread_count: int
    last_message_id: Optional[str] = None
    last_message_at: datetime
    last_message_preview: Optional[str] = None
    last_message_sender_id: Optional[str] = None

    @classmethod
    def for_viewer(cls, convo: ConversationPublic, user_id: str) -> "ConversationSummary":
        return cls(
            id=convo.id,
            other_participant_id=convo.other_participant(user_id),
            unread_count=convo.unread_for(user_id),
            last_message_id=convo.last_message_id,
            last_message_at=convo.last_message_at,
            last_message_preview=convo.last_message_preview,
            last_message_sender_id=convo.last_message_sender_id,
        )


class NotificationPublic(BaseModel):

    id: str
    user_id: str
    conversation_id: str
    sender_id: str
    preview: Optional[str] = None
    unread_messages: int = 1
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "NotificationPublic":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class CreateConversationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    other_user_id: str = Field(alias="otherUserId", min_length=1)


# ---- live channel payloads (camelCase on the wire) ----


class ConversationRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="conversationId", min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_id(cls, value: Any) -> Any:
        # join_conversation("abc") is sent with a bare id
        if isinstance(value, str):
            return {"conversationId": value}
        return value


class SendMessagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    receiver_id: Optional[str] = Field(default=None, alias="receiverId")
    content: str = ""
    message_type: MessageType = Field(default="text", alias="messageType")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")

    @model_validator(mode="after")
    def _needs_target(self) -> "SendMessagePayload":
        if not self.conversation_id and not self.receiver_id:
            raise ValueError("conversationId or receiverId is required")
        if not self.content.strip() and not self.file_url:
            raise ValueError("Message content cannot be empty")
        return self
