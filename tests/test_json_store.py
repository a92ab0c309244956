import json

import pytest

from zapbot.errors import ConflictError, NotFoundError, StoreError
from zapbot.store.json_store import JsonStore
from zapbot.store.models import SessionStatus


@pytest.mark.asyncio
async def test_session_crud(store):
    session = await store.create_session("owner-1")
    assert session.status == SessionStatus.PENDING
    assert session.qr_payload is None

    await store.update_session(session.id, status=SessionStatus.QR, qr_payload="qr-data")
    fetched = await store.get_session(session.id)
    assert fetched.status == SessionStatus.QR
    assert fetched.qr_payload == "qr-data"

    # 只改状态时二维码保持不变
    await store.update_session(session.id, status=SessionStatus.PENDING)
    assert (await store.get_session(session.id)).qr_payload == "qr-data"

    await store.update_session(session.id, status=SessionStatus.CONNECTED, qr_payload=None)
    assert (await store.get_session(session.id)).qr_payload is None


@pytest.mark.asyncio
async def test_list_sessions_filters_by_owner(store):
    a = await store.create_session("alice")
    await store.create_session("bob")
    a2 = await store.create_session("alice")

    sessions = await store.list_sessions("alice")
    assert [s.id for s in sessions] == [a.id, a2.id]
    assert len(await store.list_sessions()) == 3


@pytest.mark.asyncio
async def test_update_missing_session_raises(store):
    with pytest.raises(NotFoundError):
        await store.update_session("nope", status=SessionStatus.CONNECTED)


@pytest.mark.asyncio
async def test_duplicate_contact_conversation_conflicts(store):
    session = await store.create_session("owner")
    conv = await store.create_conversation(session.id, contact_identifier="5511")

    with pytest.raises(ConflictError):
        await store.create_conversation(session.id, contact_identifier="5511")

    assert (await store.find_conversation(session.id, "5511")).id == conv.id


@pytest.mark.asyncio
async def test_bare_conversations_are_not_unique(store):
    session = await store.create_session("owner")
    c1 = await store.create_conversation(session.id)
    c2 = await store.create_conversation(session.id)
    assert c1.id != c2.id


@pytest.mark.asyncio
async def test_same_contact_in_different_sessions(store):
    s1 = await store.create_session("owner")
    s2 = await store.create_session("owner")
    c1 = await store.create_conversation(s1.id, contact_identifier="5511")
    c2 = await store.create_conversation(s2.id, contact_identifier="5511")
    assert c1.id != c2.id


@pytest.mark.asyncio
async def test_conversation_for_missing_session_raises(store):
    with pytest.raises(NotFoundError):
        await store.create_conversation("missing", contact_identifier="5511")


@pytest.mark.asyncio
async def test_messages_are_ordered_and_timestamps_increase(store):
    session = await store.create_session("owner")
    conv = await store.create_conversation(session.id, contact_identifier="5511")

    bodies = [f"msg {i}" for i in range(20)]
    for body in bodies:
        await store.add_message(conv.id, "5511", body, from_self=False)

    messages = await store.list_messages(conv.id)
    assert [m.body for m in messages] == bodies
    for earlier, later in zip(messages, messages[1:]):
        assert later.created_at > earlier.created_at
        assert later.seq > earlier.seq


@pytest.mark.asyncio
async def test_list_messages_limit_returns_most_recent(store):
    session = await store.create_session("owner")
    conv = await store.create_conversation(session.id)
    for i in range(8):
        await store.add_message(conv.id, "user", str(i), from_self=False)

    assert [m.body for m in await store.list_messages(conv.id, limit=3)] == ["5", "6", "7"]
    assert await store.list_messages(conv.id, limit=0) == []


@pytest.mark.asyncio
async def test_list_conversations_most_recent_first(store):
    session = await store.create_session("owner")
    old = await store.create_conversation(session.id, contact_identifier="a")
    new = await store.create_conversation(session.id, contact_identifier="b")

    await store.touch_conversation(new.id)
    await store.touch_conversation(old.id)

    convs = await store.list_conversations(session.id)
    assert [c.id for c in convs] == [old.id, new.id]


@pytest.mark.asyncio
async def test_touch_missing_conversation_raises(store):
    with pytest.raises(NotFoundError):
        await store.touch_conversation("missing")
    with pytest.raises(NotFoundError):
        await store.add_message("missing", "user", "hi", from_self=False)


@pytest.mark.asyncio
async def test_delete_session_cascades(store):
    session = await store.create_session("owner")
    conv = await store.create_conversation(session.id, contact_identifier="5511")
    await store.add_message(conv.id, "5511", "Oi", from_self=False)

    assert await store.delete_session(session.id) is True
    assert await store.get_session(session.id) is None
    assert await store.get_conversation(conv.id) is None
    assert await store.list_messages(conv.id) == []
    assert await store.find_conversation(session.id, "5511") is None
    assert await store.delete_session(session.id) is False


@pytest.mark.asyncio
async def test_persistence_survives_reload(tmp_path):
    path = tmp_path / "store.json"
    store = JsonStore(path)
    session = await store.create_session("owner")
    await store.update_session(session.id, status=SessionStatus.CONNECTED)
    conv = await store.create_conversation(session.id, contact_identifier="5511", contact_name="Ana")
    await store.add_message(conv.id, "5511", "Oi", from_self=False)
    last = await store.add_message(conv.id, session.id, "Olá", from_self=True)

    reloaded = JsonStore(path)
    assert (await reloaded.get_session(session.id)).status == SessionStatus.CONNECTED
    assert (await reloaded.find_conversation(session.id, "5511")).contact_name == "Ana"
    messages = await reloaded.list_messages(conv.id)
    assert [(m.body, m.from_self) for m in messages] == [("Oi", False), ("Olá", True)]

    # 重新加载后新消息仍然排在旧消息之后
    newer = await reloaded.add_message(conv.id, "5511", "Tudo bem?", from_self=False)
    assert newer.created_at > last.created_at
    assert newer.seq > last.seq

    with pytest.raises(ConflictError):
        await reloaded.create_conversation(session.id, contact_identifier="5511")


def test_corrupt_store_file_raises(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        JsonStore(path)


@pytest.mark.asyncio
async def test_snapshot_is_valid_json(tmp_path):
    path = tmp_path / "store.json"
    store = JsonStore(path)
    await store.create_session("owner")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert len(data["sessions"]) == 1
    assert data["sessions"][0]["owner_id"] == "owner"
