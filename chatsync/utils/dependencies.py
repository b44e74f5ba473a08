from fastapi import Header, HTTPException, status
from fastapi.requests import HTTPConnection

from chatsync.services.chat_service import ChatService
from chatsync.services.presence import TypingChannel


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # identity is issued upstream; only its presence is checked here
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_chat_service(conn: HTTPConnection) -> ChatService:
    return conn.app.state.chat_service


def get_typing_channel(conn: HTTPConnection) -> TypingChannel:
    return conn.app.state.typing_channel
