import asyncio
import logging
from typing import Dict, List

from fastapi import WebSocket

from chatsync.services.session_manager import ChatSession


logger = logging.getLogger(__name__)


class ChatConnection:
    """One accepted socket and the chat session that lives exactly as long as it."""

    def __init__(self, user_id: str, websocket: WebSocket, session: ChatSession) -> None:
        self.user_id = user_id
        self.websocket = websocket
        self.session = session
        # subscription callbacks run on their own tasks and share the socket
        self._send_lock = asyncio.Lock()

    async def send(self, frame: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(frame)


class ConnectionManager:

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[ChatConnection]] = {}

    async def connect(self, user_id: str, websocket: WebSocket, session: ChatSession) -> ChatConnection:
        await websocket.accept()
        connection = ChatConnection(user_id, websocket, session)
        if user_id not in self.active_connections:
            self.active_connections[user_id] = []
        self.active_connections[user_id].append(connection)
        logger.info(f"{user_id} connected ({len(self.active_connections[user_id])} open)")
        return connection

    async def disconnect(self, connection: ChatConnection) -> None:
        connections = self.active_connections.get(connection.user_id)
        if connections is not None:
            try:
                connections.remove(connection)
            except ValueError:
                pass
            if not connections:
                del self.active_connections[connection.user_id]
        await connection.session.close()
        logger.info(f"{connection.user_id} disconnected")

    def count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, ()))

    async def close_all(self) -> None:
        for connections in list(self.active_connections.values()):
            for connection in list(connections):
                await self.disconnect(connection)
