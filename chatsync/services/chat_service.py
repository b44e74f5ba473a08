import logging
import uuid
from typing import List, Optional

from chatsync.exceptions import PartialSendFailure, StoreUnavailable
from chatsync.repositories.base import ConversationStore, MessageStore
from chatsync.schemas.chat import Conversation, Message
from chatsync.utils.dispatcher import RealtimeDispatcher
from chatsync.utils.retry import retry_async


logger = logging.getLogger(__name__)


class ChatService:
    """
    Stateless orchestration over the stores, shared by every session of a process.

    Only idempotent steps are retried on StoreUnavailable. A send's append is
    retried only because it always carries a client_message_id, which the
    store deduplicates.
    """

    def __init__(
        self,
        conversation_store: ConversationStore,
        message_store: MessageStore,
        dispatcher: RealtimeDispatcher,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._conversation_store = conversation_store
        self._message_store = message_store
        self._dispatcher = dispatcher
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay

    async def _retry(self, fn, label: str):
        return await retry_async(fn, retries=self._retry_attempts, base=self._retry_base_delay, label=label)

    async def get_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        conversation = await self._retry(
            lambda: self._conversation_store.get_or_create(user_a, user_b), "get_or_create"
        )
        await self._dispatcher.notify_conversation_changed(conversation)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await self._retry(lambda: self._conversation_store.get(conversation_id), "get_conversation")

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        return await self._retry(lambda: self._conversation_store.list_for_user(user_id), "list_conversations")

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return await self._retry(lambda: self._message_store.list(conversation_id), "list_messages")

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        if not text or not text.strip():
            raise ValueError("Message content cannot be empty")
        conversation = await self.get_conversation(conversation_id)
        if not conversation.has_member(sender_id):
            raise PermissionError(f"{sender_id} is not a member of conversation {conversation_id}")

        key = client_message_id or uuid.uuid4().hex
        content = text.strip()
        message = await self._retry(
            lambda: self._message_store.append(conversation_id, sender_id, content, client_message_id=key),
            "append",
        )
        await self._dispatcher.notify_messages_changed(conversation_id)
        await self._record_summary(message, conversation)
        return message

    async def retry_summary(self, message: Message) -> None:
        """Re-run only the summary/unread step of a send that raised PartialSendFailure."""
        conversation = await self.get_conversation(message.conversation_id)
        await self._record_summary(message, conversation)

    async def _record_summary(self, message: Message, conversation: Conversation) -> None:
        try:
            await self._retry(
                lambda: self._conversation_store.record_message_sent(
                    message.conversation_id, message.sender_id, message.text, message.created_at
                ),
                "record_message_sent",
            )
        except StoreUnavailable as exc:
            logger.warning(f"message {message.id} stored, summary for {message.conversation_id} pending")
            raise PartialSendFailure(message, cause=exc) from exc
        await self._dispatcher.notify_conversation_changed(conversation)

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        conversation = await self.get_conversation(conversation_id)
        if not conversation.has_member(reader_id):
            raise PermissionError(f"{reader_id} is not a member of conversation {conversation_id}")
        changed = await self._retry(lambda: self._message_store.mark_read(conversation_id, reader_id), "mark_read")
        if changed:
            await self._dispatcher.notify_messages_changed(conversation_id)
        # recounted from receipts; a send landing between the two writes stays counted
        await self._retry(lambda: self._conversation_store.reset_unread(conversation_id, reader_id), "reset_unread")
        await self._dispatcher.notify_conversation_changed(conversation)
        return changed
