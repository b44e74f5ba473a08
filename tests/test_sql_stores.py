import asyncio
from datetime import timedelta

import pytest

from chatsync.exceptions import ConversationNotFound
from chatsync.repositories.base import ConversationStore, MessageStore, utcnow
from chatsync.schemas.chat import conversation_id_for


def test_adapters_satisfy_store_protocols(conversation_store, message_store):
    assert isinstance(conversation_store, ConversationStore)
    assert isinstance(message_store, MessageStore)


async def test_get_or_create_new_conversation(conversation_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    assert conversation.id == conversation_id_for("alice", "bob")
    assert conversation.members == ("alice", "bob")
    assert conversation.unread_counts == {"alice": 0, "bob": 0}
    assert conversation.last_message_text is None
    assert conversation.last_message_time == conversation.created_at


async def test_get_or_create_is_symmetric(conversation_store):
    first = await conversation_store.get_or_create("bob", "alice")
    second = await conversation_store.get_or_create("alice", "bob")
    assert first.id == second.id
    assert len(await conversation_store.list_for_user("alice")) == 1


async def test_concurrent_creation_yields_one_record(conversation_store):
    results = await asyncio.gather(*[conversation_store.get_or_create("alice", "bob") for _ in range(8)])
    assert len({c.id for c in results}) == 1
    assert len(await conversation_store.list_for_user("bob")) == 1


async def test_get_unknown_conversation(conversation_store):
    with pytest.raises(ConversationNotFound):
        await conversation_store.get("missing")


async def test_record_message_sent_updates_summary_and_unread(conversation_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    at = utcnow() + timedelta(seconds=1)
    await conversation_store.record_message_sent(conversation.id, "alice", "hello", at)
    updated = await conversation_store.get(conversation.id)
    assert updated.last_message_text == "hello"
    assert updated.last_message_sender == "alice"
    assert updated.last_message_time == at
    assert updated.unread_counts == {"alice": 0, "bob": 1}


async def test_record_message_sent_keeps_newest_summary(conversation_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    now = utcnow()
    await conversation_store.record_message_sent(conversation.id, "bob", "second", now + timedelta(seconds=2))
    await conversation_store.record_message_sent(conversation.id, "alice", "first", now + timedelta(seconds=1))
    updated = await conversation_store.get(conversation.id)
    assert updated.last_message_text == "second"
    assert updated.last_message_sender == "bob"
    # counters still count both sends
    assert updated.unread_counts == {"alice": 1, "bob": 1}


async def test_concurrent_record_message_sent_counts_every_send(conversation_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    now = utcnow()
    await asyncio.gather(
        *[
            conversation_store.record_message_sent(conversation.id, "alice", f"m{i}", now + timedelta(milliseconds=i))
            for i in range(10)
        ]
    )
    updated = await conversation_store.get(conversation.id)
    assert updated.unread_counts == {"alice": 0, "bob": 10}


async def test_record_message_sent_unknown_conversation(conversation_store):
    with pytest.raises(ConversationNotFound):
        await conversation_store.record_message_sent("missing", "alice", "hi", utcnow())


async def test_reset_unread_is_idempotent(conversation_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    await conversation_store.record_message_sent(conversation.id, "alice", "hi", utcnow())
    await conversation_store.reset_unread(conversation.id, "bob")
    await conversation_store.reset_unread(conversation.id, "bob")
    updated = await conversation_store.get(conversation.id)
    assert updated.unread_counts == {"alice": 0, "bob": 0}


async def test_reset_unread_counts_messages_without_receipt(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    for text in ("one", "two"):
        await message_store.append(conversation.id, "alice", text)
        await conversation_store.record_message_sent(conversation.id, "alice", text, utcnow())
    await message_store.mark_read(conversation.id, "bob")
    # sent after the receipts were written
    await message_store.append(conversation.id, "alice", "three")
    await conversation_store.record_message_sent(conversation.id, "alice", "three", utcnow())

    await conversation_store.reset_unread(conversation.id, "bob")

    updated = await conversation_store.get(conversation.id)
    assert updated.unread_counts == {"alice": 0, "bob": 1}


async def test_reset_unread_unknown_conversation(conversation_store):
    with pytest.raises(ConversationNotFound):
        await conversation_store.reset_unread("missing", "bob")


async def test_list_for_user_orders_by_latest_activity(conversation_store):
    with_bob = await conversation_store.get_or_create("alice", "bob")
    with_carol = await conversation_store.get_or_create("alice", "carol")
    await conversation_store.get_or_create("bob", "carol")
    await conversation_store.record_message_sent(with_bob.id, "bob", "ping", utcnow() + timedelta(seconds=5))

    listed = await conversation_store.list_for_user("alice")
    assert [c.id for c in listed] == [with_bob.id, with_carol.id]
    assert await conversation_store.list_for_user("nobody") == []


async def test_set_typing(conversation_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    await conversation_store.set_typing(conversation.id, "alice", True)
    updated = await conversation_store.get(conversation.id)
    assert updated.typing.user_id == "alice"
    assert updated.typing.is_typing is True
    with pytest.raises(ConversationNotFound):
        await conversation_store.set_typing("missing", "alice", True)


async def test_append_assigns_timestamp_and_sender_read(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    message = await message_store.append(conversation.id, "alice", "hello", client_message_id="k1")
    assert message.text == "hello"
    assert message.read_by == ["alice"]
    assert message.created_at >= conversation.created_at
    assert message.created_at.tzinfo is not None


async def test_append_unknown_conversation(message_store):
    with pytest.raises(ConversationNotFound):
        await message_store.append("missing", "alice", "hello")


async def test_append_deduplicates_client_message_id(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    first = await message_store.append(conversation.id, "alice", "hello", client_message_id="k1")
    again = await message_store.append(conversation.id, "alice", "hello", client_message_id="k1")
    assert first.id == again.id
    assert len(await message_store.list(conversation.id)) == 1


async def test_concurrent_appends_get_distinct_ordered_timestamps(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    sent = await asyncio.gather(
        *[
            message_store.append(conversation.id, "alice" if i % 2 else "bob", f"m{i}", client_message_id=f"k{i}")
            for i in range(10)
        ]
    )
    listed = await message_store.list(conversation.id)
    assert {m.id for m in listed} == {m.id for m in sent}
    stamps = [m.created_at for m in listed]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


async def test_list_is_stable(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    for i in range(5):
        await message_store.append(conversation.id, "alice", f"m{i}")
    first = await message_store.list(conversation.id)
    second = await message_store.list(conversation.id)
    assert [m.id for m in first] == [m.id for m in second]
    assert [m.text for m in first] == [f"m{i}" for i in range(5)]


async def test_mark_read_adds_reader_once(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    await message_store.append(conversation.id, "alice", "one")
    await message_store.append(conversation.id, "alice", "two")
    await message_store.append(conversation.id, "bob", "mine")

    assert await message_store.mark_read(conversation.id, "bob") == 2
    assert await message_store.mark_read(conversation.id, "bob") == 0

    listed = await message_store.list(conversation.id)
    assert [m.read_by for m in listed] == [["alice", "bob"], ["alice", "bob"], ["bob"]]


async def test_concurrent_mark_read_is_idempotent(conversation_store, message_store):
    conversation = await conversation_store.get_or_create("alice", "bob")
    for i in range(4):
        await message_store.append(conversation.id, "alice", f"m{i}")
    changed = await asyncio.gather(*[message_store.mark_read(conversation.id, "bob") for _ in range(4)])
    assert sum(changed) == 4
    for message in await message_store.list(conversation.id):
        assert message.read_by == ["alice", "bob"]


async def test_mark_read_unknown_conversation(message_store):
    with pytest.raises(ConversationNotFound):
        await message_store.mark_read("missing", "bob")
