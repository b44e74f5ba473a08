import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chatsync.models.tables import Base


logger = logging.getLogger(__name__)


class MongoConnection:

    def __init__(self, url: str, db_name: str) -> None:
        self._url = url
        self._db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        # tz_aware so datetimes come back in UTC instead of naive
        self.client = AsyncIOMotorClient(self._url, tz_aware=True)
        logger.info(f"Connected to MongoDB database {self._db_name}")
        return self.client[self._db_name]

    def get_database(self) -> AsyncIOMotorDatabase:
        if self.client is None:
            raise RuntimeError("MongoDB connection is not open")
        return self.client[self._db_name]

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Closed MongoDB connection")


class SqlConnection:

    def __init__(self, url: str, echo: bool = False) -> None:
        self.engine: AsyncEngine = create_async_engine(url, echo=echo)
        # rows are read after commit when building canonical models
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Disposed SQL engine")
