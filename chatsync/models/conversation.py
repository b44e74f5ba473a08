from datetime import datetime
from typing import List, Optional, TypedDict


class TypingDocument(TypedDict, total=False):
    user_id: Optional[str]
    is_typing: bool


class ConversationDocument(TypedDict, total=False):
    # deterministic id, see schemas.chat.conversation_id_for
    _id: str
    members: List[str]
    created_at: datetime
    last_message_text: Optional[str]
    last_message_time: datetime
    last_message_sender: Optional[str]
    # per-user unread counters (user_id -> count)
    unread_counts: dict[str, int]
    typing: TypingDocument
    # last timestamp handed out to a message of this conversation
    message_clock: datetime
