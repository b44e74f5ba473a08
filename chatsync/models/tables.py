from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    member_a: Mapped[str] = mapped_column(String(128))
    member_b: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime)
    last_message_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_message_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    last_message_sender: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # last timestamp handed out to a message of this conversation
    message_clock: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ConversationMemberRow(Base):
    __tablename__ = "conversation_members"

    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (Index("ix_conversation_members_user_id", "user_id"),)


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    sender_id: Mapped[str] = mapped_column(String(128))
    text: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    client_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("conversation_id", "client_message_id", name="uq_messages_client_message_id"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at", "id"),
    )


class MessageReadRow(Base):
    __tablename__ = "message_reads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id"), index=True)
    reader_id: Mapped[str] = mapped_column(String(128))

    __table_args__ = (UniqueConstraint("message_id", "reader_id", name="uq_message_reads_reader"),)
