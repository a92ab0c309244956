import asyncio

import pytest

from conftest import FakeGenerator, text_message
from zapbot.bus.events import EventKind
from zapbot.errors import NotFoundError, StoreError, TransportError
from zapbot.pipeline.pipeline import FALLBACK_REPLY, MessagePipeline, accept_transport_message


@pytest.mark.asyncio
async def test_inbound_message_gets_reply_and_event(store, pipeline, events):
    session = await store.create_session("owner")

    messages = await pipeline.handle_inbound(session.id, "5511999999999", "Oi")

    assert [(m.body, m.from_self) for m in messages] == [("Oi", False), ("Olá! Como posso ajudar?", True)]
    assert messages[0].sender_identifier == "5511999999999"
    assert messages[1].sender_identifier == session.id
    assert messages[1].created_at > messages[0].created_at

    conv = await store.find_conversation(session.id, "5511999999999")
    assert conv is not None
    assert conv.last_message_at is not None

    assert len(events) == 1
    event = events[0]
    assert event.kind is EventKind.MESSAGE
    assert event.conversation_id == conv.id
    assert [m.body for m in event.messages] == ["Oi", "Olá! Como posso ajudar?"]


@pytest.mark.asyncio
async def test_events_carry_full_history(store, pipeline, events):
    session = await store.create_session("owner")

    await pipeline.handle_inbound(session.id, "5511", "Oi")
    await pipeline.handle_inbound(session.id, "5511", "Tudo bem?")

    assert len(events) == 2
    assert [m.body for m in events[1].messages] == [
        "Oi", "Olá! Como posso ajudar?", "Tudo bem?", "Olá! Como posso ajudar?",
    ]


@pytest.mark.asyncio
async def test_prompt_includes_recent_history(store, pipeline, generator):
    session = await store.create_session("owner")

    await pipeline.handle_inbound(session.id, "5511", "Oi")
    await pipeline.handle_inbound(session.id, "5511", "Qual o horário?")

    first, second = generator.prompts
    assert "Usuário: Oi" in first
    assert "Assistente:" not in first
    assert "Usuário: Oi\nAssistente: Olá! Como posso ajudar?" in second
    assert second.rstrip().endswith("(máx. 2 frases):")
    assert "Usuário: Qual o horário?" in second


@pytest.mark.asyncio
async def test_history_window_limits_prompt(store, bus):
    generator = FakeGenerator()
    pipeline = MessagePipeline(store, bus, generator, history_window=2)
    session = await store.create_session("owner")

    for text in ["um", "dois", "três"]:
        await pipeline.handle_inbound(session.id, "5511", text)

    last_prompt = generator.prompts[-1]
    assert "Usuário: um" not in last_prompt
    assert "Usuário: dois\nAssistente: Olá! Como posso ajudar?" in last_prompt


@pytest.mark.asyncio
async def test_generation_failure_uses_fallback(store, bus, events):
    pipeline = MessagePipeline(store, bus, FakeGenerator(fail=True))
    session = await store.create_session("owner")

    messages = await pipeline.handle_inbound(session.id, "5511", "Oi")

    assert messages[-1].body == FALLBACK_REPLY
    assert messages[-1].from_self is True
    assert len(events) == 1


@pytest.mark.asyncio
async def test_identical_prompts_hit_cache(store, pipeline, generator):
    session = await store.create_session("owner")

    await pipeline.handle_inbound(session.id, "5511", "Oi")
    await pipeline.handle_inbound(session.id, "5522", "Oi")

    assert len(generator.prompts) == 1
    assert pipeline.cache.hits == 1


@pytest.mark.asyncio
async def test_ignored_messages(store, pipeline, events):
    session = await store.create_session("owner")

    assert await pipeline.handle_inbound(session.id, "5511", "Oi", sender_is_self=True) is None
    assert await pipeline.handle_inbound(session.id, "5511", "   ") is None

    assert await store.list_conversations(session.id) == []
    assert events == []


def test_accept_transport_message_filters():
    assert accept_transport_message(text_message())
    assert not accept_transport_message(text_message(from_me=True))
    assert not accept_transport_message(text_message(text=None))
    assert not accept_transport_message(text_message(text="  "))
    assert not accept_transport_message(text_message(remote_jid="1203630@g.us"))
    assert not accept_transport_message(text_message(remote_jid="status@broadcast"))
    assert not accept_transport_message(text_message(remote_jid=""))


@pytest.mark.asyncio
async def test_transport_message_replies_to_full_jid(store, pipeline):
    session = await store.create_session("owner")
    sent = []

    async def sender(session_id, recipient, text):
        sent.append((session_id, recipient, text))

    pipeline.bind_sender(sender)
    messages = await pipeline.handle_transport_message(
        session.id, text_message(remote_jid="5511999999999:3@s.whatsapp.net")
    )

    conv = await store.find_conversation(session.id, "5511999999999")
    assert conv.contact_name == "Ana"
    assert messages[0].conversation_id == conv.id
    assert sent == [(session.id, "5511999999999:3@s.whatsapp.net", "Olá! Como posso ajudar?")]


@pytest.mark.asyncio
async def test_send_failure_keeps_persisted_reply(store, pipeline, events):
    session = await store.create_session("owner")

    async def failing_sender(session_id, recipient, text):
        raise TransportError("socket closed")

    pipeline.bind_sender(failing_sender)
    messages = await pipeline.handle_transport_message(session.id, text_message())

    assert len(messages) == 2
    conv = await store.find_conversation(session.id, "5511999999999")
    assert len(await store.list_messages(conv.id)) == 2
    assert len(events) == 1


@pytest.mark.asyncio
async def test_concurrent_messages_share_one_conversation(store, pipeline):
    session = await store.create_session("owner")

    results = await asyncio.gather(*[
        pipeline.handle_inbound(session.id, "5511", f"mensagem {i}") for i in range(5)
    ])

    convs = await store.list_conversations(session.id)
    assert len(convs) == 1
    messages = await store.list_messages(convs[0].id)
    assert len(messages) == 10
    # 同一对话上的处理是串行的：入站与回复成对出现
    assert [m.from_self for m in messages] == [False, True] * 5
    assert all(len(r) % 2 == 0 for r in results)


@pytest.mark.asyncio
async def test_resolve_retries_after_conflict(store, pipeline, monkeypatch):
    session = await store.create_session("owner")
    existing = await store.create_conversation(session.id, contact_identifier="5511")

    real_find = store.find_conversation
    calls = []

    async def racing_find(session_id, contact):
        calls.append(contact)
        # 第一次查询时另一个处理者还没来得及创建
        if len(calls) == 1:
            return None
        return await real_find(session_id, contact)

    monkeypatch.setattr(store, "find_conversation", racing_find)

    messages = await pipeline.handle_inbound(session.id, "5511", "Oi")

    assert messages[0].conversation_id == existing.id
    assert len(await store.list_conversations(session.id)) == 1
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_simulate_inbound_on_bare_conversation(store, pipeline, events):
    session = await store.create_session("owner")
    conv = await store.create_conversation(session.id)
    sent = []

    async def sender(session_id, recipient, text):
        sent.append(recipient)

    pipeline.bind_sender(sender)
    messages = await pipeline.simulate_inbound(session.id, conv.id, "Oi")

    assert messages[0].sender_identifier == "user"
    assert messages[1].from_self is True
    assert sent == []
    assert events[0].conversation_id == conv.id


@pytest.mark.asyncio
async def test_simulate_inbound_validation(store, pipeline):
    session = await store.create_session("owner")
    other = await store.create_session("owner")
    conv = await store.create_conversation(other.id, contact_identifier="5511")

    with pytest.raises(ValueError):
        await pipeline.simulate_inbound(session.id, conv.id, "  ")
    with pytest.raises(NotFoundError):
        await pipeline.simulate_inbound(session.id, conv.id, "Oi")
    with pytest.raises(NotFoundError):
        await pipeline.simulate_inbound(session.id, "missing", "Oi")


@pytest.mark.asyncio
async def test_store_failure_aborts_item(store, pipeline, events, monkeypatch):
    session = await store.create_session("owner")
    sent = []

    async def sender(session_id, recipient, text):
        sent.append(text)

    pipeline.bind_sender(sender)
    add_message = store.add_message

    async def failing_reply(conversation_id, sender_identifier, body, from_self, type="text"):
        if from_self:
            raise StoreError("disk full")
        return await add_message(conversation_id, sender_identifier, body, from_self, type)

    monkeypatch.setattr(store, "add_message", failing_reply)

    with pytest.raises(StoreError):
        await pipeline.handle_transport_message(session.id, text_message())

    conv = await store.find_conversation(session.id, "5511999999999")
    assert [m.body for m in await store.list_messages(conv.id)] == ["Oi"]
    assert sent == []
    assert events == []


@pytest.mark.asyncio
async def test_touch_failure_reaches_caller(store, pipeline, events, monkeypatch):
    session = await store.create_session("owner")

    async def boom(conversation_id):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "touch_conversation", boom)

    with pytest.raises(StoreError):
        await pipeline.handle_inbound(session.id, "5511", "Oi")
    assert events == []
