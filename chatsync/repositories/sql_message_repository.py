import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import String, exists, func, insert, literal, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatsync.exceptions import ConversationNotFound
from chatsync.models.tables import ConversationRow, MessageReadRow, MessageRow
from chatsync.repositories.base import as_utc, utcnow
from chatsync.repositories.errors import store_errors
from chatsync.repositories.sql_conversation_repository import to_db_time
from chatsync.schemas.chat import Message


logger = logging.getLogger(__name__)

_CLOCK_TICK = timedelta(microseconds=1)
_MARK_READ_ATTEMPTS = 3


def message_from_row(row: MessageRow, readers: Iterable[str]) -> Message:
    return Message(
        id=str(row.id),
        conversation_id=row.conversation_id,
        sender_id=row.sender_id,
        text=row.text,
        created_at=as_utc(row.created_at),
        read_by=list(readers),
        client_message_id=row.client_message_id,
    )


class SqlMessageRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _find_by_client_id(self, conversation_id: str, client_message_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MessageRow).where(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.client_message_id == client_message_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            readers = await self._readers(session, [row.id])
        return message_from_row(row, readers[row.id])

    async def _readers(self, session: AsyncSession, message_ids: List[int]):
        readers = defaultdict(list)
        if not message_ids:
            return readers
        result = await session.execute(
            select(MessageReadRow.message_id, MessageReadRow.reader_id)
            .where(MessageReadRow.message_id.in_(message_ids))
            .order_by(MessageReadRow.id)
        )
        for message_id, reader_id in result.all():
            readers[message_id].append(reader_id)
        return readers

    async def _next_timestamp(self, session: AsyncSession, conversation_id: str) -> datetime:
        # take the conversation row's write lock before reading the clock
        touched = await session.execute(
            update(ConversationRow)
            .where(ConversationRow.id == conversation_id)
            .values(message_clock=func.coalesce(ConversationRow.message_clock, ConversationRow.created_at))
            .execution_options(synchronize_session=False)
        )
        if touched.rowcount == 0:
            raise ConversationNotFound(conversation_id)
        previous = (
            await session.execute(select(ConversationRow.message_clock).where(ConversationRow.id == conversation_id))
        ).scalar_one()
        stamp = max(to_db_time(utcnow()), previous + _CLOCK_TICK)
        await session.execute(
            update(ConversationRow)
            .where(ConversationRow.id == conversation_id)
            .values(message_clock=stamp)
            .execution_options(synchronize_session=False)
        )
        return stamp

    @store_errors(SQLAlchemyError)
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
        try:
            async with self._session_factory() as session, session.begin():
                created_at = await self._next_timestamp(session, conversation_id)
                row = MessageRow(
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    text=text,
                    created_at=created_at,
                    client_message_id=client_message_id,
                )
                session.add(row)
                await session.flush()
                session.add(MessageReadRow(message_id=row.id, reader_id=sender_id))
                await session.flush()
                message = message_from_row(row, [sender_id])
        except IntegrityError:
            if not client_message_id:
                raise
            # a retry of the same send committed first
            existing = await self._find_by_client_id(conversation_id, client_message_id)
            if existing is None:
                raise
            return existing
        return message

    @store_errors(SQLAlchemyError)
    async def list(self, conversation_id: str) -> List[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at, MessageRow.id)
            )
            rows = result.scalars().all()
            readers = await self._readers(session, [r.id for r in rows])
        return [message_from_row(r, readers[r.id]) for r in rows]

    @store_errors(SQLAlchemyError)
    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        unread = select(MessageRow.id, literal(reader_id, String)).where(
            MessageRow.conversation_id == conversation_id,
            MessageRow.sender_id != reader_id,
            ~exists().where(
                MessageReadRow.message_id == MessageRow.id,
                MessageReadRow.reader_id == reader_id,
            ),
        )
        stmt = insert(MessageReadRow.__table__).from_select(["message_id", "reader_id"], unread)
        for attempt in range(_MARK_READ_ATTEMPTS):
            try:
                async with self._session_factory() as session, session.begin():
                    result = await session.execute(stmt)
                    changed = result.rowcount or 0
                    if changed == 0 and await session.get(ConversationRow, conversation_id) is None:
                        raise ConversationNotFound(conversation_id)
                    return changed
            except IntegrityError:
                # a concurrent mark_read inserted some of the same receipts
                if attempt == _MARK_READ_ATTEMPTS - 1:
                    raise
                logger.debug(f"mark_read conflict on {conversation_id}, retrying")
        return 0
