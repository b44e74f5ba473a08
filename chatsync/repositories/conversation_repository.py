import logging
from datetime import datetime
from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from chatsync.exceptions import ConversationNotFound, StoreUnavailable
from chatsync.models.conversation import ConversationDocument
from chatsync.repositories.base import as_utc, utcnow
from chatsync.repositories.errors import store_errors
from chatsync.schemas.chat import Conversation, TypingState, conversation_id_for


logger = logging.getLogger(__name__)

RESET_ATTEMPTS = 5


def conversation_from_document(doc: ConversationDocument) -> Conversation:
    typing = doc.get("typing") or {}
    return Conversation(
        id=str(doc["_id"]),
        members=tuple(doc["members"]),
        last_message_text=doc.get("last_message_text"),
        last_message_time=as_utc(doc.get("last_message_time")),
        last_message_sender=doc.get("last_message_sender"),
        unread_counts={k: int(v) for k, v in (doc.get("unread_counts") or {}).items()},
        typing=TypingState(user_id=typing.get("user_id"), is_typing=bool(typing.get("is_typing", False))),
        created_at=as_utc(doc.get("created_at")),
    )


def _map_unread(value_expr: Dict[str, Any]) -> Dict[str, Any]:
    # rebuild unread_counts server-side; "$$u.k" is the member id, "$$u.v" its counter.
    # Dotted update paths would break on ids containing "." or "$".
    return {
        "$arrayToObject": {
            "$map": {
                "input": {"$objectToArray": "$unread_counts"},
                "as": "u",
                "in": {"k": "$$u.k", "v": value_expr},
            }
        }
    }


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("members", ASCENDING)])
        await self.collection.create_index([("last_message_time", DESCENDING), ("_id", DESCENDING)])

    @store_errors(PyMongoError)
    async def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        conversation_id = conversation_id_for(user_a, user_b)
        members = sorted([user_a, user_b])
        now = utcnow()
        doc: Dict[str, Any] = {
            "members": members,
            "created_at": now,
            "last_message_text": None,
            "last_message_time": now,
            "last_message_sender": None,
            "unread_counts": {members[0]: 0, members[1]: 0},
            "typing": {"user_id": None, "is_typing": False},
        }
        try:
            raw = await self.collection.find_one_and_update(
                {"_id": conversation_id},
                {"$setOnInsert": doc},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # two upserts raced on the same _id; the other one inserted
            raw = await self.collection.find_one({"_id": conversation_id})
        logger.debug(f"get_or_create {conversation_id} for {members}")
        return conversation_from_document(raw)

    @store_errors(PyMongoError)
    async def get(self, conversation_id: str) -> Conversation:
        raw = await self.collection.find_one({"_id": conversation_id})
        if raw is None:
            raise ConversationNotFound(conversation_id)
        return conversation_from_document(raw)

    @store_errors(PyMongoError)
    async def list_for_user(self, user_id: str) -> List[Conversation]:
        cursor = self.collection.find({"members": user_id}).sort(
            [("last_message_time", DESCENDING), ("_id", DESCENDING)]
        )
        items = await cursor.to_list(length=None)
        return [conversation_from_document(it) for it in items]

    @store_errors(PyMongoError)
    async def record_message_sent(self, conversation_id: str, sender_id: str, text: str, at: datetime) -> None:
        newer = {"$gte": [at, "$last_message_time"]}
        pipeline = [
            {
                "$set": {
                    "last_message_text": {"$cond": [newer, {"$literal": text}, "$last_message_text"]},
                    "last_message_sender": {"$cond": [newer, {"$literal": sender_id}, "$last_message_sender"]},
                    "last_message_time": {"$max": [at, "$last_message_time"]},
                    "unread_counts": _map_unread(
                        {"$cond": [{"$eq": ["$$u.k", {"$literal": sender_id}]}, "$$u.v", {"$add": ["$$u.v", 1]}]}
                    ),
                }
            }
        ]
        result = await self.collection.update_one({"_id": conversation_id}, pipeline)
        if result.matched_count == 0:
            raise ConversationNotFound(conversation_id)

    @store_errors(PyMongoError)
    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        for _ in range(RESET_ATTEMPTS):
            doc = await self.collection.find_one({"_id": conversation_id}, {"unread_counts": 1})
            if doc is None:
                raise ConversationNotFound(conversation_id)
            counts = doc.get("unread_counts") or {}
            unread = await self._db["messages"].count_documents(
                {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}, "read_by": {"$ne": user_id}}
            )
            if counts.get(user_id, unread) == unread:
                return
            pipeline = [
                {
                    "$set": {
                        "unread_counts": _map_unread(
                            {"$cond": [{"$eq": ["$$u.k", {"$literal": user_id}]}, unread, "$$u.v"]}
                        )
                    }
                }
            ]
            # only overwrite the counters the recount was taken against
            result = await self.collection.update_one({"_id": conversation_id, "unread_counts": counts}, pipeline)
            if result.matched_count:
                return
            logger.debug(f"unread counters of {conversation_id} changed during recount, retrying")
        raise StoreUnavailable(f"unread counter of {conversation_id} kept changing")

    @store_errors(PyMongoError)
    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        result = await self.collection.update_one(
            {"_id": conversation_id},
            {"$set": {"typing": {"user_id": user_id, "is_typing": is_typing}}},
        )
        if result.matched_count == 0:
            raise ConversationNotFound(conversation_id)
