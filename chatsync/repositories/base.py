"""
Store contracts shared by the document (MongoDB) and row (SQLAlchemy) adapters.

A deployment picks exactly one adapter pair; the services only see these
protocols. Every adapter raises ``ConversationNotFound`` for unknown ids and
wraps driver I/O errors in ``StoreUnavailable``.
"""

from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

from chatsync.schemas.chat import Conversation, Message


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drivers hand back naive UTC datetimes; make them aware once, at the boundary."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@runtime_checkable
class ConversationStore(Protocol):

    async def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        """Idempotent upsert keyed by the sorted pair."""
        ...

    async def get(self, conversation_id: str) -> Conversation:
        ...

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """Most recent activity first."""
        ...

    async def record_message_sent(self, conversation_id: str, sender_id: str, text: str, at: datetime) -> None:
        """Set the summary and increment the other member's unread counter in one atomic write."""
        ...

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        """Set the user's counter to the messages they did not send and have no receipt for."""
        ...

    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        ...


@runtime_checkable
class MessageStore(Protocol):

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Store a new message with a store-assigned timestamp; dedupes on client_message_id."""
        ...

    async def list(self, conversation_id: str) -> List[Message]:
        """Ascending by created_at, ties by id."""
        ...

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Add reader_id to read_by of every message they did not send; returns messages changed."""
        ...
