import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from chatsync.config import Settings, get_settings
from chatsync.database.connection import MongoConnection, SqlConnection
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.sql_conversation_repository import SqlConversationRepository
from chatsync.repositories.sql_message_repository import SqlMessageRepository
from chatsync.routers.chat import router as chat_router
from chatsync.routers.conversations import router as conversations_router
from chatsync.services.chat_service import ChatService
from chatsync.services.presence import TypingChannel
from chatsync.utils.dispatcher import RealtimeDispatcher
from chatsync.utils.realtime_bus import create_bus
from chatsync.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)


async def _open_stores(settings: Settings):
    if settings.store_backend == "mongo":
        connection = MongoConnection(settings.mongo_url, settings.mongo_db_name)
        db = await connection.connect()
        conversations = ConversationRepository(db)
        messages = MessageRepository(db)
        await conversations.ensure_indexes()
        await messages.ensure_indexes()
    else:
        connection = SqlConnection(settings.database_url)
        await connection.create_tables()
        conversations = SqlConversationRepository(connection.session_factory)
        messages = SqlMessageRepository(connection.session_factory)
    logger.info(f"Using {settings.store_backend} store backend")
    return connection, conversations, messages


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    connection, conversations, messages = await _open_stores(settings)
    bus = create_bus(settings.redis_url)
    dispatcher = RealtimeDispatcher(
        bus,
        conversations,
        messages,
        retry_attempts=settings.retry_attempts,
        retry_base_delay=settings.retry_base_delay,
    )
    app.state.dispatcher = dispatcher
    app.state.chat_service = ChatService(
        conversations,
        messages,
        dispatcher,
        retry_attempts=settings.retry_attempts,
        retry_base_delay=settings.retry_base_delay,
    )
    app.state.typing_channel = TypingChannel(bus, conversations, dispatcher)
    app.state.connections = ConnectionManager()
    try:
        yield
    finally:
        await app.state.connections.close_all()
        await dispatcher.close()
        await bus.close()
        await connection.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(title="Chat sync service", lifespan=lifespan)
    app.state.settings = settings or get_settings()
    app.include_router(conversations_router)
    app.include_router(chat_router)

    @app.get("/")
    async def root():
        return {"status": "ok", "store_backend": app.state.settings.store_backend}

    return app


app = create_app()
