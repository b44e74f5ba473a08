import itertools
import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatsync.exceptions import ChatError, PartialSendFailure
from chatsync.schemas.chat import Conversation, Message, TypingState
from chatsync.services.chat_service import ChatService
from chatsync.services.presence import TypingChannel
from chatsync.services.session_manager import ChatSession, SessionClosed
from chatsync.utils.dependencies import get_chat_service, get_typing_channel
from chatsync.utils.dispatcher import Subscription
from chatsync.utils.websocket_manager import ChatConnection


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


class FrameError(Exception):

    def __init__(self, error: str, detail: str) -> None:
        super().__init__(detail)
        self.error = error
        self.detail = detail


def _require(frame: Dict[str, Any], *keys: str) -> List[Any]:
    missing = [k for k in keys if not frame.get(k)]
    if missing:
        raise FrameError("INVALID_FRAME", f"missing field(s): {', '.join(missing)}")
    return [frame[k] for k in keys]


class ChatSocketHandler:
    """
    Dispatches client frames onto one ChatSession.

    Client frames: open, send, read, typing, subscribe_messages,
    subscribe_conversations, unsubscribe. Server frames: conversation,
    messages, conversations, typing, ack, error. A frame's ``request_id``
    is echoed on its ack or error.
    """

    def __init__(self, connection: ChatConnection) -> None:
        self.connection = connection
        self.session = connection.session
        self._ids = itertools.count(1)
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def _next_id(self) -> str:
        return f"sub-{next(self._ids)}"

    async def handle(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        handler = getattr(self, f"on_{kind}", None) if isinstance(kind, str) else None
        if handler is None:
            raise FrameError("UNKNOWN_FRAME", f"unsupported frame type {kind!r}")
        reply = await handler(frame)
        if reply is not None:
            if frame.get("request_id") is not None:
                reply["request_id"] = frame["request_id"]
            await self.connection.send(reply)

    async def on_open(self, frame):
        (other_user_id,) = _require(frame, "other_user_id")
        conversation = await self.session.open_or_create(other_user_id)
        return {"type": "conversation", "conversation": conversation.model_dump(mode="json")}

    async def on_send(self, frame):
        conversation_id, text = _require(frame, "conversation_id", "text")
        try:
            message = await self.session.send(conversation_id, text, frame.get("client_message_id"))
        except PartialSendFailure as exc:
            return {"type": "ack", "message": exc.message.model_dump(mode="json"), "warning": "summary_pending"}
        return {"type": "ack", "message": message.model_dump(mode="json")}

    async def on_read(self, frame):
        (conversation_id,) = _require(frame, "conversation_id")
        updated = await self.session.mark_read(conversation_id)
        return {"type": "ack", "conversation_id": conversation_id, "updated": updated}

    async def on_typing(self, frame):
        (conversation_id,) = _require(frame, "conversation_id")
        if frame.get("is_typing", True):
            await self.session.keystroke(conversation_id)
        else:
            await self.session.stop_typing(conversation_id)
        return None

    async def on_subscribe_messages(self, frame):
        (conversation_id,) = _require(frame, "conversation_id")
        subscription_id = self._next_id()
        send = self.connection.send

        async def on_messages(messages: List[Message]) -> None:
            await send({
                "type": "messages",
                "subscription_id": subscription_id,
                "conversation_id": conversation_id,
                "messages": [m.model_dump(mode="json") for m in messages],
            })

        async def on_typing(state: TypingState) -> None:
            await send({"type": "typing", "conversation_id": conversation_id, **state.model_dump()})

        messages_sub = await self.session.subscribe_messages(conversation_id, on_messages)
        # typing rides along with the message view of a conversation
        indicator = await self.session.subscribe_typing(conversation_id, on_typing)
        self._subscriptions[subscription_id] = [messages_sub, indicator.subscription]
        return {"type": "ack", "subscription_id": subscription_id}

    async def on_subscribe_conversations(self, frame):
        subscription_id = self._next_id()
        send = self.connection.send

        async def on_conversations(conversations: List[Conversation]) -> None:
            await send({
                "type": "conversations",
                "subscription_id": subscription_id,
                "conversations": [c.model_dump(mode="json") for c in conversations],
            })

        sub = await self.session.subscribe_conversations(on_conversations)
        self._subscriptions[subscription_id] = [sub]
        return {"type": "ack", "subscription_id": subscription_id}

    async def on_unsubscribe(self, frame):
        (subscription_id,) = _require(frame, "subscription_id")
        subs = self._subscriptions.pop(subscription_id, None)
        if subs is None:
            raise FrameError("UNKNOWN_SUBSCRIPTION", f"no subscription {subscription_id}")
        for sub in subs:
            sub.unsubscribe()
        return {"type": "ack", "subscription_id": subscription_id, "unsubscribed": True}


def _error_frame(frame: Dict[str, Any], error: str, detail: str) -> Dict[str, Any]:
    reply = {"type": "error", "error": error, "detail": detail}
    if isinstance(frame, dict) and frame.get("request_id") is not None:
        reply["request_id"] = frame["request_id"]
    return reply


@router.websocket("/ws/chat/{user_id}")
async def chat_socket(
    websocket: WebSocket,
    user_id: str,
    service: ChatService = Depends(get_chat_service),
    typing: TypingChannel = Depends(get_typing_channel),
):
    manager = websocket.app.state.connections
    settings = websocket.app.state.settings
    session = ChatSession(
        user_id,
        service,
        websocket.app.state.dispatcher,
        typing,
        typing_timeout=settings.typing_timeout,
    )
    connection = await manager.connect(user_id, websocket, session)
    handler = ChatSocketHandler(connection)
    try:
        while True:
            data = await websocket.receive_text()
            frame: Dict[str, Any] = {}
            try:
                frame = json.loads(data)
                if not isinstance(frame, dict):
                    raise FrameError("INVALID_FRAME", "frame must be a JSON object")
                await handler.handle(frame)
            except json.JSONDecodeError:
                await connection.send(_error_frame(frame, "INVALID_FRAME", "frame is not valid JSON"))
            except FrameError as exc:
                logger.debug(f"{user_id}: rejected frame: {exc.detail}")
                await connection.send(_error_frame(frame, exc.error, exc.detail))
            except ChatError as exc:
                await connection.send(_error_frame(frame, exc.error_code, str(exc)))
            except PermissionError as exc:
                await connection.send(_error_frame(frame, "FORBIDDEN", str(exc)))
            except ValueError as exc:
                await connection.send(_error_frame(frame, "INVALID_REQUEST", str(exc)))
    except (WebSocketDisconnect, SessionClosed):
        pass
    finally:
        await manager.disconnect(connection)
