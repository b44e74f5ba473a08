import asyncio

import pytest

from chatsync.database.connection import SqlConnection
from chatsync.exceptions import StoreUnavailable
from chatsync.repositories.sql_conversation_repository import SqlConversationRepository
from chatsync.repositories.sql_message_repository import SqlMessageRepository
from chatsync.services.chat_service import ChatService
from chatsync.services.presence import TypingChannel
from chatsync.services.session_manager import ChatSession
from chatsync.utils.dispatcher import RealtimeDispatcher
from chatsync.utils.realtime_bus import LocalBus


@pytest.fixture
async def sql_connection(tmp_path):
    connection = SqlConnection(f"sqlite+aiosqlite:///{tmp_path}/chat.db")
    await connection.create_tables()
    yield connection
    await connection.close()


@pytest.fixture
def conversation_store(sql_connection):
    return SqlConversationRepository(sql_connection.session_factory)


@pytest.fixture
def message_store(sql_connection):
    return SqlMessageRepository(sql_connection.session_factory)


@pytest.fixture
async def bus():
    local = LocalBus()
    yield local
    await local.close()


@pytest.fixture
async def dispatcher(bus, conversation_store, message_store):
    realtime = RealtimeDispatcher(bus, conversation_store, message_store, retry_attempts=3, retry_base_delay=0)
    yield realtime
    await realtime.close()


@pytest.fixture
def service(conversation_store, message_store, dispatcher):
    return ChatService(conversation_store, message_store, dispatcher, retry_attempts=3, retry_base_delay=0)


@pytest.fixture
def typing_channel(bus, conversation_store, dispatcher):
    return TypingChannel(bus, conversation_store, dispatcher)


@pytest.fixture
async def make_session(service, dispatcher, typing_channel):
    sessions = []

    def factory(user_id, typing_timeout=2.0):
        session = ChatSession(user_id, service, dispatcher, typing_channel, typing_timeout=typing_timeout)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.close()


@pytest.fixture
def eventually():
    async def wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return wait


class Flaky:
    """Wraps a store and fails the named methods ``failures`` times with StoreUnavailable."""

    def __init__(self, store, failures=1, methods=()):
        self._store = store
        self.failures = failures
        self.methods = set(methods)
        self.calls = {}

    def __getattr__(self, name):
        target = getattr(self._store, name)
        if name not in self.methods:
            return target

        async def call(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            if self.failures > 0:
                self.failures -= 1
                raise StoreUnavailable(f"{name} unavailable")
            return await target(*args, **kwargs)

        return call


@pytest.fixture
def flaky():
    return Flaky
