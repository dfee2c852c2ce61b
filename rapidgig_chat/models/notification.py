from datetime import datetime
from typing import Optional, TypedDict


class NotificationDocument(TypedDict, total=False):
    _id: str
    user_id: str
    conversation_id: str
    sender_id: str
    preview: Optional[str]
    # undelivered messages collapsed into this record
    unread_messages: int
    created_at: datetime
    updated_at: datetime
