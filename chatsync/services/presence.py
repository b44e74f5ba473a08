"""Typing indicators, debounced on both ends so a lost "stopped" event clears itself."""

import asyncio
import inspect
import logging
from typing import Callable, Optional

from chatsync.repositories.base import ConversationStore
from chatsync.schemas.chat import TypingState
from chatsync.utils.dispatcher import RealtimeDispatcher, Subscription, typing_channel


logger = logging.getLogger(__name__)

TYPING_TIMEOUT = 2.0


class TypingChannel:

    def __init__(self, bus, conversation_store: ConversationStore, dispatcher: RealtimeDispatcher) -> None:
        self._bus = bus
        self._conversations = conversation_store
        self._dispatcher = dispatcher

    async def publish(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        """Fire and forget: never raises."""
        state = TypingState(user_id=user_id, is_typing=is_typing)
        try:
            await self._conversations.set_typing(conversation_id, user_id, is_typing)
            await self._bus.publish(typing_channel(conversation_id), state.model_dump_json())
        except Exception as exc:
            logger.warning(f"typing update for {conversation_id} by {user_id} dropped: {exc!r}")

    async def subscribe(self, conversation_id: str, callback: Callable[[TypingState], object]) -> Subscription:
        async def parse(payload: Optional[str]) -> TypingState:
            return TypingState.model_validate_json(payload)

        return await self._dispatcher.subscribe_channels(
            f"typing:{conversation_id}",
            [typing_channel(conversation_id)],
            parse,
            callback,
            initial=False,
        )


class TypingIndicator:
    """Subscriber-side typing state for one viewer of one conversation."""

    def __init__(
        self,
        viewer_id: str,
        timeout: float = TYPING_TIMEOUT,
        on_change: Optional[Callable[[TypingState], object]] = None,
    ) -> None:
        self.viewer_id = viewer_id
        self.timeout = timeout
        self.user_id: Optional[str] = None
        self.is_typing = False
        self._on_change = on_change
        self._timer: Optional[asyncio.TimerHandle] = None
        self.subscription: Optional[Subscription] = None

    @property
    def state(self) -> TypingState:
        return TypingState(user_id=self.user_id, is_typing=self.is_typing)

    def __call__(self, state: TypingState) -> None:
        if state.user_id == self.viewer_id:
            return
        self._cancel_timer()
        if state.is_typing:
            # every fresh "typing" restarts the countdown
            self._timer = asyncio.get_running_loop().call_later(self.timeout, self._expire)
        self._set(state.user_id, state.is_typing)

    def _expire(self) -> None:
        self._timer = None
        self._set(self.user_id, False)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set(self, user_id: Optional[str], is_typing: bool) -> None:
        changed = is_typing != self.is_typing or user_id != self.user_id
        self.user_id = user_id
        self.is_typing = is_typing
        if not changed or self._on_change is None:
            return
        try:
            result = self._on_change(self.state)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("typing indicator callback failed")

    def close(self) -> None:
        self._cancel_timer()


class TypingNotifier:
    """Sender-side debounce for one user in one conversation."""

    def __init__(self, channel: TypingChannel, conversation_id: str, user_id: str, idle: float = TYPING_TIMEOUT) -> None:
        self._channel = channel
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.idle = idle
        self.is_typing = False
        self._last_publish: Optional[float] = None
        self._stop_task: Optional[asyncio.Task] = None

    async def keystroke(self) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_stop()
        # re-announce often enough that subscribers' countdowns never run out mid-typing
        if not self.is_typing or self._last_publish is None or loop.time() - self._last_publish >= self.idle / 2:
            self.is_typing = True
            self._last_publish = loop.time()
            await self._channel.publish(self.conversation_id, self.user_id, True)
        self._stop_task = asyncio.create_task(self._stop_later())

    async def _stop_later(self) -> None:
        await asyncio.sleep(self.idle)
        self._stop_task = None
        await self._publish_stop()

    async def stop(self) -> None:
        self._cancel_stop()
        if self.is_typing:
            await self._publish_stop()

    async def _publish_stop(self) -> None:
        self.is_typing = False
        self._last_publish = None
        await self._channel.publish(self.conversation_id, self.user_id, False)

    def _cancel_stop(self) -> None:
        if self._stop_task is not None and self._stop_task is not asyncio.current_task():
            self._stop_task.cancel()
        self._stop_task = None

    def close(self) -> None:
        self._cancel_stop()
