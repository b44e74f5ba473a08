import pytest

from chatsync.exceptions import ConversationNotFound, PartialSendFailure, StoreUnavailable
from chatsync.services.chat_service import ChatService


async def test_send_rejects_empty_text_without_side_effects(service, message_store):
    conversation = await service.get_or_create_conversation("alice", "bob")
    with pytest.raises(ValueError):
        await service.send_message(conversation.id, "alice", "   ")
    assert await message_store.list(conversation.id) == []
    assert (await service.get_conversation(conversation.id)).unread_counts == {"alice": 0, "bob": 0}


async def test_send_rejects_non_member(service):
    conversation = await service.get_or_create_conversation("alice", "bob")
    with pytest.raises(PermissionError):
        await service.send_message(conversation.id, "mallory", "hi")


async def test_send_to_unknown_conversation(service):
    with pytest.raises(ConversationNotFound):
        await service.send_message("missing", "alice", "hi")


async def test_send_generates_idempotency_key(service):
    conversation = await service.get_or_create_conversation("alice", "bob")
    message = await service.send_message(conversation.id, "alice", "hi")
    assert message.client_message_id


async def test_send_with_same_key_is_deduplicated(service, message_store):
    conversation = await service.get_or_create_conversation("alice", "bob")
    first = await service.send_message(conversation.id, "alice", "hi", client_message_id="k1")
    second = await service.send_message(conversation.id, "alice", "hi", client_message_id="k1")
    assert first.id == second.id
    assert len(await message_store.list(conversation.id)) == 1


async def test_append_is_retried(conversation_store, message_store, dispatcher, flaky):
    messages = flaky(message_store, failures=2, methods=["append"])
    service = ChatService(conversation_store, messages, dispatcher, retry_base_delay=0)
    conversation = await service.get_or_create_conversation("alice", "bob")

    message = await service.send_message(conversation.id, "alice", "hi")

    assert messages.calls["append"] == 3
    assert message.text == "hi"


async def test_summary_recovers_within_retry_budget(conversation_store, message_store, dispatcher, flaky):
    conversations = flaky(conversation_store, failures=2, methods=["record_message_sent"])
    service = ChatService(conversations, message_store, dispatcher, retry_base_delay=0)
    conversation = await service.get_or_create_conversation("alice", "bob")

    await service.send_message(conversation.id, "alice", "hi")

    assert conversations.calls["record_message_sent"] == 3
    assert (await conversation_store.get(conversation.id)).unread_counts["bob"] == 1


async def test_partial_send_failure_keeps_message(conversation_store, message_store, dispatcher, flaky):
    conversations = flaky(conversation_store, failures=3, methods=["record_message_sent"])
    service = ChatService(conversations, message_store, dispatcher, retry_base_delay=0)
    conversation = await service.get_or_create_conversation("alice", "bob")

    with pytest.raises(PartialSendFailure) as info:
        await service.send_message(conversation.id, "alice", "hi")

    assert isinstance(info.value.cause, StoreUnavailable)
    assert [m.id for m in await message_store.list(conversation.id)] == [info.value.message.id]
    assert (await conversation_store.get(conversation.id)).unread_counts["bob"] == 0

    await service.retry_summary(info.value.message)
    updated = await conversation_store.get(conversation.id)
    assert updated.unread_counts["bob"] == 1
    assert updated.last_message_text == "hi"


async def test_mark_read_resets_counter_and_receipts(service, message_store):
    conversation = await service.get_or_create_conversation("alice", "bob")
    await service.send_message(conversation.id, "alice", "one")
    await service.send_message(conversation.id, "alice", "two")

    assert await service.mark_read(conversation.id, "bob") == 2
    assert await service.mark_read(conversation.id, "bob") == 0

    updated = await service.get_conversation(conversation.id)
    assert updated.unread_counts == {"alice": 0, "bob": 0}
    assert all(m.is_read_by("bob") for m in await message_store.list(conversation.id))


async def test_mark_read_rejects_non_member(service):
    conversation = await service.get_or_create_conversation("alice", "bob")
    with pytest.raises(PermissionError):
        await service.mark_read(conversation.id, "mallory")


async def test_unread_counter_matches_unread_messages(service, message_store):
    conversation = await service.get_or_create_conversation("alice", "bob")
    for text in ("a", "b", "c"):
        await service.send_message(conversation.id, "alice", text)
    await service.mark_read(conversation.id, "bob")
    await service.send_message(conversation.id, "alice", "d")
    await service.send_message(conversation.id, "bob", "e")

    updated = await service.get_conversation(conversation.id)
    messages = await message_store.list(conversation.id)
    for member in conversation.members:
        unread = [m for m in messages if m.sender_id != member and not m.is_read_by(member)]
        assert updated.unread_counts[member] == len(unread)


async def test_send_between_receipts_and_reset_keeps_unread(conversation_store, message_store, dispatcher):
    writer = ChatService(conversation_store, message_store, dispatcher, retry_base_delay=0)

    class SendAfterReceipts:
        def __getattr__(self, name):
            return getattr(message_store, name)

        async def mark_read(self, conversation_id, reader_id):
            changed = await message_store.mark_read(conversation_id, reader_id)
            await writer.send_message(conversation_id, "alice", "two")
            return changed

    reader = ChatService(conversation_store, SendAfterReceipts(), dispatcher, retry_base_delay=0)
    conversation = await writer.get_or_create_conversation("alice", "bob")
    await writer.send_message(conversation.id, "alice", "one")

    assert await reader.mark_read(conversation.id, "bob") == 1

    messages = await message_store.list(conversation.id)
    unread = [m.text for m in messages if not m.is_read_by("bob")]
    assert unread == ["two"]
    assert (await conversation_store.get(conversation.id)).unread_counts["bob"] == 1


async def test_list_conversations_for_user(service):
    await service.get_or_create_conversation("alice", "bob")
    await service.get_or_create_conversation("carol", "alice")
    assert len(await service.list_conversations("alice")) == 2
    assert len(await service.list_conversations("bob")) == 1
