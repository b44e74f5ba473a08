import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from chatsync.exceptions import ConversationNotFound
from chatsync.models.message import MessageDocument
from chatsync.repositories.base import as_utc
from chatsync.repositories.errors import store_errors
from chatsync.schemas.chat import Message


logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def message_from_document(doc: MessageDocument) -> Message:
    return Message(
        id=str(doc["_id"]),
        conversation_id=str(doc["conversation_id"]),
        sender_id=doc["sender_id"],
        text=doc["text"],
        created_at=as_utc(doc["created_at"]),
        read_by=list(doc.get("read_by") or []),
        client_message_id=doc.get("client_message_id"),
    )


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    @property
    def conversations(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("client_message_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"client_message_id": {"$type": "string"}},
        )

    async def _next_timestamp(self, conversation_id: str) -> datetime:
        # server clock ($$NOW), bumped by 1ms when it has not moved past the previous message
        doc = await self.conversations.find_one_and_update(
            {"_id": conversation_id},
            [
                {
                    "$set": {
                        "message_clock": {
                            "$max": ["$$NOW", {"$add": [{"$ifNull": ["$message_clock", _EPOCH]}, 1]}]
                        }
                    }
                }
            ],
            projection={"message_clock": 1},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ConversationNotFound(conversation_id)
        return as_utc(doc["message_clock"])

    async def _find_by_client_id(self, conversation_id: str, client_message_id: str) -> Optional[Message]:
        doc = await self.collection.find_one(
            {"conversation_id": conversation_id, "client_message_id": client_message_id}
        )
        return message_from_document(doc) if doc else None

    @store_errors(PyMongoError)
    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        if client_message_id:
            existing = await self._find_by_client_id(conversation_id, client_message_id)
            if existing:
                logger.debug(f"append deduplicated client_message_id={client_message_id}")
                return existing
        created_at = await self._next_timestamp(conversation_id)
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "created_at": created_at,
            "read_by": [sender_id],
            "client_message_id": client_message_id,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # a retry of the same send landed first
            existing = await self._find_by_client_id(conversation_id, client_message_id)
            if existing is None:
                raise
            return existing
        doc["_id"] = result.inserted_id
        return message_from_document(doc)

    @store_errors(PyMongoError)
    async def list(self, conversation_id: str) -> List[Message]:
        cursor = self.collection.find({"conversation_id": conversation_id}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        items = await cursor.to_list(length=None)
        return [message_from_document(it) for it in items]

    @store_errors(PyMongoError)
    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        if await self.conversations.count_documents({"_id": conversation_id}, limit=1) == 0:
            raise ConversationNotFound(conversation_id)
        result = await self.collection.update_many(
            {
                "conversation_id": conversation_id,
                "sender_id": {"$ne": reader_id},
                "read_by": {"$ne": reader_id},
            },
            {"$addToSet": {"read_by": reader_id}},
        )
        return result.modified_count or 0
