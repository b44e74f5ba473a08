import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis


logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[None]]


class LocalBus:
    """In-process fan-out. Only correct when a single worker serves every client."""

    distributed = False

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    async def publish(self, channel: str, message: str) -> None:
        for handler in list(self._handlers.get(channel, ())):
            try:
                await handler(message)
            except Exception:
                logger.exception(f"local bus handler failed on {channel}")

    async def subscribe(self, channel: str, on_message: Handler) -> "_LocalSubscription":
        self._handlers[channel].append(on_message)
        return _LocalSubscription(self, channel, on_message)

    def _remove(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            del self._handlers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, ()))

    async def close(self) -> None:
        self._handlers.clear()


class _LocalSubscription:

    def __init__(self, bus: LocalBus, channel: str, handler: Handler) -> None:
        self._bus = bus
        self._channel = channel
        self._handler = handler
        self._stopped = asyncio.Event()

    async def run(self) -> None:
        # delivery happens inside publish(); this only parks until cancel()
        await self._stopped.wait()

    async def cancel(self) -> None:
        self._bus._remove(self._channel, self._handler)
        self._stopped.set()


class RedisBus:

    distributed = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Handler) -> "_RedisSubscription":
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


class _RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: Handler) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg and msg.get("type") == "message":
                    data = msg.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    await self._on_message(data)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"redis subscription on {self._channel} failed: {exc!r}")
                await asyncio.sleep(0.5)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except Exception as exc:
            logger.debug(f"redis unsubscribe from {self._channel} failed: {exc!r}")


def create_bus(redis_url: Optional[str] = None):
    if not redis_url:
        logger.info("REDIS_URL not set, using in-process realtime bus")
        return LocalBus()
    return RedisBus(redis_url)
