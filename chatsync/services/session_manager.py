"""Per-connection chat state: opened conversations, their states and subscriptions."""

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from chatsync.exceptions import PartialSendFailure
from chatsync.schemas.chat import Conversation, Message, TypingState, conversation_id_for
from chatsync.services.chat_service import ChatService
from chatsync.services.presence import TYPING_TIMEOUT, TypingChannel, TypingIndicator, TypingNotifier
from chatsync.utils.dispatcher import RealtimeDispatcher, Subscription


logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    NO_CHAT = "no_chat"
    CREATING = "creating"
    ACTIVE = "active"
    SENDING = "sending"
    IDLE = "idle"
    CLOSED = "closed"


class SessionClosed(RuntimeError):
    pass


_SENDABLE = (ConversationState.ACTIVE, ConversationState.IDLE, ConversationState.SENDING)


class ChatSession:

    def __init__(
        self,
        user_id: str,
        service: ChatService,
        dispatcher: RealtimeDispatcher,
        typing_channel: TypingChannel,
        typing_timeout: float = TYPING_TIMEOUT,
    ) -> None:
        self.user_id = user_id
        self._service = service
        self._dispatcher = dispatcher
        self._typing_channel = typing_channel
        self._typing_timeout = typing_timeout
        self._chats: Dict[str, Conversation] = {}
        self._creating: Dict[str, asyncio.Future] = {}
        self._states: Dict[str, ConversationState] = {}
        self._in_flight: Dict[str, int] = defaultdict(int)
        # state to return to once the last in-flight send settles
        self._resting: Dict[str, ConversationState] = {}
        self._verified: Set[str] = set()
        self._message_subs: Dict[str, Set[Subscription]] = defaultdict(set)
        self._subscriptions: Set[Subscription] = set()
        self._notifiers: Dict[str, TypingNotifier] = {}
        self._closed = False

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def state(self, conversation_id: str) -> ConversationState:
        if self._closed:
            return ConversationState.CLOSED
        return self._states.get(conversation_id, ConversationState.NO_CHAT)

    def conversations(self) -> List[Conversation]:
        return list(self._chats.values())

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"chat session for {self.user_id} is closed")

    def _local_chat(self, other_user_id: str) -> Optional[Conversation]:
        for conversation in self._chats.values():
            if conversation.has_member(self.user_id) and conversation.has_member(other_user_id):
                return conversation
        return None

    async def _require_member(self, conversation_id: str) -> None:
        if conversation_id in self._chats or conversation_id in self._verified:
            return
        conversation = await self._service.get_conversation(conversation_id)
        if not conversation.has_member(self.user_id):
            raise PermissionError(f"{self.user_id} is not a member of conversation {conversation_id}")
        self._verified.add(conversation_id)

    async def open_or_create(self, other_user_id: str) -> Conversation:
        self._ensure_open()
        existing = self._local_chat(other_user_id)
        if existing is not None:
            return existing
        conversation_id = conversation_id_for(self.user_id, other_user_id)
        pending = self._creating.get(conversation_id)
        if pending is None:
            pending = asyncio.ensure_future(self._create(conversation_id, other_user_id))
            self._creating[conversation_id] = pending
        # shielded: one caller giving up must not cancel the creation the others wait on
        return await asyncio.shield(pending)

    async def _create(self, conversation_id: str, other_user_id: str) -> Conversation:
        self._states[conversation_id] = ConversationState.CREATING
        try:
            conversation = await self._service.get_or_create_conversation(self.user_id, other_user_id)
        except BaseException:
            self._states.pop(conversation_id, None)
            raise
        finally:
            self._creating.pop(conversation_id, None)
        self._chats[conversation.id] = conversation
        self._states[conversation.id] = ConversationState.ACTIVE
        logger.info(f"{self.user_id} opened conversation {conversation.id}")
        return conversation

    async def send(self, conversation_id: str, text: str, client_message_id: Optional[str] = None) -> Message:
        self._ensure_open()
        if not text or not text.strip():
            raise ValueError("Message content cannot be empty")
        # only chats this session opened move through SENDING
        tracked = self._states.get(conversation_id) in _SENDABLE
        if tracked:
            if not self._in_flight[conversation_id]:
                self._resting[conversation_id] = self._states[conversation_id]
            self._in_flight[conversation_id] += 1
            self._states[conversation_id] = ConversationState.SENDING
        try:
            message = await self._service.send_message(conversation_id, self.user_id, text, client_message_id)
        except PartialSendFailure:
            await self.stop_typing(conversation_id)
            raise
        finally:
            if tracked:
                self._in_flight[conversation_id] -= 1
                if self._in_flight[conversation_id] == 0:
                    del self._in_flight[conversation_id]
                    self._states[conversation_id] = self._resting.pop(conversation_id)
        await self.stop_typing(conversation_id)
        return message

    async def mark_read(self, conversation_id: str) -> int:
        self._ensure_open()
        return await self._service.mark_read(conversation_id, self.user_id)

    def _track(self, sub: Subscription, conversation_id: Optional[str] = None, messages: bool = False) -> Subscription:
        self._subscriptions.add(sub)

        def _released(released: Subscription) -> None:
            self._subscriptions.discard(released)
            if not messages:
                return
            subs = self._message_subs.get(conversation_id)
            if subs is None:
                return
            subs.discard(released)
            if not subs:
                del self._message_subs[conversation_id]
                if self._closed:
                    return
                state = self._states.get(conversation_id)
                if state == ConversationState.ACTIVE:
                    self._states[conversation_id] = ConversationState.IDLE
                elif state == ConversationState.SENDING:
                    self._resting[conversation_id] = ConversationState.IDLE

        sub.add_close_callback(_released)
        if messages:
            self._message_subs[conversation_id].add(sub)
            state = self._states.get(conversation_id)
            if state == ConversationState.IDLE:
                self._states[conversation_id] = ConversationState.ACTIVE
            elif state == ConversationState.SENDING:
                self._resting[conversation_id] = ConversationState.ACTIVE
        return sub

    async def subscribe_messages(self, conversation_id: str, on_change: Callable[[List[Message]], object]) -> Subscription:
        self._ensure_open()
        await self._require_member(conversation_id)
        sub = await self._dispatcher.subscribe_messages(conversation_id, on_change)
        return self._track(sub, conversation_id, messages=True)

    async def subscribe_conversations(self, on_change: Callable[[List[Conversation]], object]) -> Subscription:
        self._ensure_open()
        sub = await self._dispatcher.subscribe_conversations(self.user_id, on_change)
        return self._track(sub)

    async def subscribe_conversation(self, conversation_id: str, on_change: Callable[[Conversation], object]) -> Subscription:
        self._ensure_open()
        await self._require_member(conversation_id)
        sub = await self._dispatcher.subscribe_conversation(conversation_id, on_change)
        return self._track(sub)

    async def subscribe_typing(
        self,
        conversation_id: str,
        on_change: Optional[Callable[[TypingState], object]] = None,
    ) -> TypingIndicator:
        """The returned indicator auto-clears after the typing timeout; its subscription dies with the session."""
        self._ensure_open()
        await self._require_member(conversation_id)
        indicator = TypingIndicator(self.user_id, timeout=self._typing_timeout, on_change=on_change)
        sub = await self._typing_channel.subscribe(conversation_id, indicator)
        sub.add_close_callback(lambda _sub: indicator.close())
        indicator.subscription = sub
        self._track(sub)
        return indicator

    def _notifier(self, conversation_id: str) -> TypingNotifier:
        notifier = self._notifiers.get(conversation_id)
        if notifier is None:
            notifier = TypingNotifier(self._typing_channel, conversation_id, self.user_id, idle=self._typing_timeout)
            self._notifiers[conversation_id] = notifier
        return notifier

    async def keystroke(self, conversation_id: str) -> None:
        self._ensure_open()
        await self._require_member(conversation_id)
        await self._notifier(conversation_id).keystroke()

    async def stop_typing(self, conversation_id: str) -> None:
        notifier = self._notifiers.get(conversation_id)
        if notifier is not None:
            await notifier.stop()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for pending in list(self._creating.values()):
            pending.cancel()
        subs = list(self._subscriptions)
        for sub in subs:
            sub.unsubscribe()
        for notifier in self._notifiers.values():
            await notifier.stop()
            notifier.close()
        self._notifiers.clear()
        for sub in subs:
            await sub.wait_closed()
        logger.info(f"closed chat session for {self.user_id}")
