"""Turns store writes into ordered, per-subscriber snapshot callbacks."""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

from chatsync.repositories.base import ConversationStore, MessageStore
from chatsync.schemas.chat import Conversation
from chatsync.utils.retry import retry_async


logger = logging.getLogger(__name__)

Callback = Callable[[Any], Any]
Transform = Callable[[Optional[str]], Awaitable[Any]]

# queued first so the current state reaches the callback before any change
_INITIAL = object()


def messages_channel(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def typing_channel(conversation_id: str) -> str:
    return f"typing:{conversation_id}"


class Subscription:
    """Handle returned by every ``subscribe_*`` call."""

    def __init__(
        self,
        name: str,
        transform: Transform,
        on_change: Callback,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        on_close: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.name = name
        self._transform = transform
        self._on_change = on_change
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._close_callbacks: List[Callable[["Subscription"], None]] = [on_close] if on_close else []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._deafened = False
        self._bus_subs: List[Any] = []
        self._tasks: List[asyncio.Task] = []
        self._closing: List[asyncio.Task] = []

    @property
    def active(self) -> bool:
        return not self._deafened

    async def handle(self, raw: str) -> None:
        # bus handler: never blocks the bus, only queues
        if not self._deafened:
            self._queue.put_nowait(raw)

    def attach(self, bus_sub) -> None:
        self._bus_subs.append(bus_sub)
        self._tasks.append(asyncio.create_task(bus_sub.run()))

    def start(self, initial: bool = True) -> None:
        if initial:
            self._queue.put_nowait(_INITIAL)
        self._tasks.append(asyncio.create_task(self._deliver_loop()))

    async def _deliver_loop(self) -> None:
        while not self._deafened:
            raw = await self._queue.get()
            if self._deafened:
                return
            payload = None if raw is _INITIAL else raw
            try:
                value = await retry_async(
                    lambda: self._transform(payload),
                    retries=self._retry_attempts,
                    base=self._retry_base_delay,
                    label=f"snapshot for {self.name}",
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # the next notification carries a fresh snapshot
                logger.warning(f"{self.name}: dropping update, snapshot failed: {exc!r}")
                continue
            if self._deafened:
                return
            try:
                result = self._on_change(value)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"{self.name}: subscriber callback failed")

    def unsubscribe(self) -> None:
        """No callback runs after this returns; bus teardown finishes in the background."""
        if self._deafened:
            return
        self._deafened = True
        for task in self._tasks:
            if task is not asyncio.current_task():
                task.cancel()
        for bus_sub in self._bus_subs:
            self._closing.append(asyncio.ensure_future(bus_sub.cancel()))
        for callback in self._close_callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(f"{self.name}: close callback failed")
        logger.debug(f"unsubscribed {self.name}")

    def add_close_callback(self, callback: Callable[["Subscription"], None]) -> None:
        if self._deafened:
            callback(self)
        else:
            self._close_callbacks.append(callback)

    async def wait_closed(self) -> None:
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        pending = [t for t in self._tasks if t is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class RealtimeDispatcher:

    def __init__(
        self,
        bus,
        conversation_store: ConversationStore,
        message_store: MessageStore,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._bus = bus
        self._conversations = conversation_store
        self._messages = message_store
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._subscriptions: Set[Subscription] = set()

    async def subscribe_channels(
        self,
        name: str,
        channels: Iterable[str],
        transform: Transform,
        on_change: Callback,
        initial: bool = True,
    ) -> Subscription:
        sub = Subscription(
            name,
            transform,
            on_change,
            retry_attempts=self._retry_attempts,
            retry_base_delay=self._retry_base_delay,
            on_close=self._subscriptions.discard,
        )
        # listen before reading the initial snapshot so no change slips between them
        for channel in channels:
            sub.attach(await self._bus.subscribe(channel, sub.handle))
        sub.start(initial=initial)
        self._subscriptions.add(sub)
        return sub

    async def subscribe_messages(self, conversation_id: str, on_change: Callback) -> Subscription:
        async def snapshot(_payload):
            return await self._messages.list(conversation_id)

        return await self.subscribe_channels(
            f"messages:{conversation_id}", [messages_channel(conversation_id)], snapshot, on_change
        )

    async def subscribe_conversations(self, user_id: str, on_change: Callback) -> Subscription:
        async def snapshot(_payload):
            return await self._conversations.list_for_user(user_id)

        return await self.subscribe_channels(
            f"conversations:{user_id}", [user_channel(user_id)], snapshot, on_change
        )

    async def subscribe_conversation(self, conversation_id: str, on_change: Callback) -> Subscription:
        async def snapshot(_payload):
            return await self._conversations.get(conversation_id)

        return await self.subscribe_channels(
            f"conversation:{conversation_id}", [conversation_channel(conversation_id)], snapshot, on_change
        )

    async def _publish(self, channel: str, event: dict) -> None:
        try:
            await self._bus.publish(channel, json.dumps(event))
        except Exception as exc:
            # the write is committed; subscribers catch up on the next change
            logger.warning(f"publish to {channel} failed: {exc!r}")

    async def notify_messages_changed(self, conversation_id: str) -> None:
        await self._publish(
            messages_channel(conversation_id),
            {"type": "messages_changed", "conversation_id": conversation_id},
        )

    async def notify_conversation_changed(self, conversation: Conversation) -> None:
        event = {"type": "conversation_changed", "conversation_id": conversation.id}
        await self._publish(conversation_channel(conversation.id), event)
        for member in conversation.members:
            await self._publish(user_channel(member), event)

    async def close(self) -> None:
        subs = list(self._subscriptions)
        for sub in subs:
            sub.unsubscribe()
        for sub in subs:
            await sub.wait_closed()
