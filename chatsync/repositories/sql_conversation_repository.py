"""
Row-store adapter for conversations (SQLAlchemy async).

Unread counters live one row per member in ``conversation_members`` so a send
is a plain ``unread_count = unread_count + 1`` on the other member's row and a
read recounts the row from receipts. The typing field is transient and kept in
process memory only.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatsync.exceptions import ConversationNotFound
from chatsync.models.tables import ConversationMemberRow, ConversationRow, MessageReadRow, MessageRow
from chatsync.repositories.base import as_utc, utcnow
from chatsync.repositories.errors import store_errors
from chatsync.schemas.chat import Conversation, TypingState, conversation_id_for


logger = logging.getLogger(__name__)


def to_db_time(value: datetime) -> datetime:
    # columns are naive UTC so the stored text compares in time order on every backend
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def conversation_from_rows(
    row: ConversationRow,
    members: Iterable[ConversationMemberRow],
    typing: Optional[TypingState] = None,
) -> Conversation:
    return Conversation(
        id=row.id,
        members=(row.member_a, row.member_b),
        last_message_text=row.last_message_text,
        last_message_time=as_utc(row.last_message_time),
        last_message_sender=row.last_message_sender,
        unread_counts={m.user_id: m.unread_count for m in members},
        typing=typing or TypingState(),
        created_at=as_utc(row.created_at),
    )


class SqlConversationRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._typing: Dict[str, TypingState] = {}

    async def _load(self, session: AsyncSession, conversation_id: str) -> Optional[Conversation]:
        row = await session.get(ConversationRow, conversation_id)
        if row is None:
            return None
        result = await session.execute(
            select(ConversationMemberRow).where(ConversationMemberRow.conversation_id == conversation_id)
        )
        return conversation_from_rows(row, result.scalars().all(), self._typing.get(conversation_id))

    @store_errors(SQLAlchemyError)
    async def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        conversation_id = conversation_id_for(user_a, user_b)
        low, high = sorted([user_a, user_b])
        async with self._session_factory() as session:
            existing = await self._load(session, conversation_id)
        if existing is not None:
            return existing

        now = to_db_time(utcnow())
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    ConversationRow(
                        id=conversation_id,
                        member_a=low,
                        member_b=high,
                        created_at=now,
                        last_message_time=now,
                    )
                )
                session.add_all(
                    [
                        ConversationMemberRow(conversation_id=conversation_id, user_id=low, unread_count=0),
                        ConversationMemberRow(conversation_id=conversation_id, user_id=high, unread_count=0),
                    ]
                )
        except IntegrityError:
            # a concurrent caller inserted the same pair first
            logger.debug(f"conversation {conversation_id} created concurrently, reusing it")
        else:
            logger.info(f"Created conversation {conversation_id} between {low} and {high}")

        async with self._session_factory() as session:
            created = await self._load(session, conversation_id)
        if created is None:
            raise ConversationNotFound(conversation_id)
        return created

    @store_errors(SQLAlchemyError)
    async def get(self, conversation_id: str) -> Conversation:
        async with self._session_factory() as session:
            conversation = await self._load(session, conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    @store_errors(SQLAlchemyError)
    async def list_for_user(self, user_id: str) -> List[Conversation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConversationRow)
                .join(ConversationMemberRow, ConversationMemberRow.conversation_id == ConversationRow.id)
                .where(ConversationMemberRow.user_id == user_id)
                .order_by(ConversationRow.last_message_time.desc(), ConversationRow.id.desc())
            )
            rows = result.scalars().all()
            if not rows:
                return []
            member_result = await session.execute(
                select(ConversationMemberRow).where(
                    ConversationMemberRow.conversation_id.in_([r.id for r in rows])
                )
            )
            members = defaultdict(list)
            for m in member_result.scalars().all():
                members[m.conversation_id].append(m)
        return [conversation_from_rows(r, members[r.id], self._typing.get(r.id)) for r in rows]

    @store_errors(SQLAlchemyError)
    async def record_message_sent(self, conversation_id: str, sender_id: str, text: str, at: datetime) -> None:
        at_db = to_db_time(at)
        newer = or_(ConversationRow.last_message_time.is_(None), ConversationRow.last_message_time <= at_db)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(
                    last_message_text=case((newer, text), else_=ConversationRow.last_message_text),
                    last_message_sender=case((newer, sender_id), else_=ConversationRow.last_message_sender),
                    last_message_time=case((newer, at_db), else_=ConversationRow.last_message_time),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConversationNotFound(conversation_id)
            await session.execute(
                update(ConversationMemberRow)
                .where(
                    ConversationMemberRow.conversation_id == conversation_id,
                    ConversationMemberRow.user_id != sender_id,
                )
                .values(unread_count=ConversationMemberRow.unread_count + 1)
                .execution_options(synchronize_session=False)
            )

    @store_errors(SQLAlchemyError)
    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        unread = (
            select(func.count(MessageRow.id))
            .where(
                MessageRow.conversation_id == conversation_id,
                MessageRow.sender_id != user_id,
                ~exists().where(MessageReadRow.message_id == MessageRow.id, MessageReadRow.reader_id == user_id),
            )
            .scalar_subquery()
        )
        async with self._session_factory() as session, session.begin():
            # recount from receipts so a send landing after mark_read keeps its increment
            result = await session.execute(
                update(ConversationMemberRow)
                .where(
                    ConversationMemberRow.conversation_id == conversation_id,
                    ConversationMemberRow.user_id == user_id,
                )
                .values(unread_count=unread)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0 and await session.get(ConversationRow, conversation_id) is None:
                raise ConversationNotFound(conversation_id)

    @store_errors(SQLAlchemyError)
    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        if conversation_id not in self._typing:
            async with self._session_factory() as session:
                if await session.get(ConversationRow, conversation_id) is None:
                    raise ConversationNotFound(conversation_id)
        self._typing[conversation_id] = TypingState(user_id=user_id, is_typing=is_typing)
