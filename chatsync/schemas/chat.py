import hashlib
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def conversation_id_for(user_a: str, user_b: str) -> str:
    """Stable id for the unordered pair {user_a, user_b}."""
    if user_a == user_b:
        raise ValueError("A conversation needs two distinct participants")
    low, high = sorted([user_a, user_b])
    # NUL separator keeps ("a_b", "c") and ("a", "b_c") apart
    return hashlib.sha1(f"{low}\x00{high}".encode("utf-8")).hexdigest()[:24]


class TypingState(BaseModel):

    user_id: Optional[str] = None
    is_typing: bool = False


class Conversation(BaseModel):

    id: str
    members: Tuple[str, str]
    last_message_text: Optional[str] = None
    last_message_time: Optional[datetime] = None
    last_message_sender: Optional[str] = None
    unread_counts: Dict[str, int] = Field(default_factory=dict)
    typing: TypingState = Field(default_factory=TypingState)
    created_at: Optional[datetime] = None

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members

    def other_member(self, user_id: str) -> str:
        if user_id not in self.members:
            raise ValueError(f"{user_id} is not a member of conversation {self.id}")
        return self.members[1] if self.members[0] == user_id else self.members[0]


class Message(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    read_by: List[str] = Field(default_factory=list)
    client_message_id: Optional[str] = None

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by


class OpenConversationRequest(BaseModel):

    other_user_id: str = Field(min_length=1)


class SendMessageRequest(BaseModel):

    text: str
    client_message_id: Optional[str] = None


class TypingRequest(BaseModel):

    is_typing: bool
