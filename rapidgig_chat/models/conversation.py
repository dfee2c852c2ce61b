from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # always two ids, sorted
    participants: List[str]
    # "a:b" for the sorted pair, unique
    participant_key: str
    # per-participant unread counters (user_id -> count)
    unread_counters: Dict[str, int]
    message_seq: int
    last_message_id: Optional[str]
    last_message_seq: int
    last_message_at: datetime
    last_message_preview: Optional[str]
    last_message_sender_id: Optional[str]
    created_at: datetime
