from datetime import datetime
from typing import Literal, Optional, TypedDict


MessageType = Literal["text", "file", "image"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: MessageType
    # attachment reference from file storage
    file_url: Optional[str]
    file_name: Optional[str]
    file_size: Optional[int]
    # ordering key inside the conversation
    seq: int
    created_at: datetime
    # read state, scoped to receiver_id
    is_read: bool
    read_at: Optional[datetime]
    is_deleted: bool
    deleted_at: Optional[datetime]
    client_message_id: Optional[str]
