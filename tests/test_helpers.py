import asyncio

import pytest

from zapbot.session.credentials import CredentialStore
from zapbot.utils.helpers import KeyedLocks, is_group_or_broadcast, jid_user, normalize_whitespace, safe_filename


def test_jid_helpers():
    assert jid_user("5511999999999@s.whatsapp.net") == "5511999999999"
    assert jid_user("5511999999999:12@s.whatsapp.net") == "5511999999999"
    assert jid_user("5511") == "5511"
    assert is_group_or_broadcast("120363@g.us")
    assert is_group_or_broadcast("status@broadcast")
    assert is_group_or_broadcast("1203@newsletter")
    assert not is_group_or_broadcast("5511@s.whatsapp.net")


def test_string_helpers():
    assert normalize_whitespace("  a \n\t b  ") == "a b"
    assert safe_filename("a/b:c") == "a_b_c"


@pytest.mark.asyncio
async def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    order = []

    async def work(key, tag):
        async with locks.lock(key):
            order.append(f"{tag}-start")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-end")

    await asyncio.gather(work("a", "1"), work("a", "2"))
    assert order == ["1-start", "1-end", "2-start", "2-end"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_locks_do_not_block_other_keys():
    locks = KeyedLocks()
    order = []

    async def work(key):
        async with locks.lock(key):
            order.append(f"{key}-start")
            await asyncio.sleep(0.01)
            order.append(f"{key}-end")

    await asyncio.gather(work("a"), work("b"))
    assert order[:2] == ["a-start", "b-start"]


def test_credential_store_roundtrip(tmp_path):
    creds = CredentialStore(tmp_path / "credentials")
    assert creds.load("s1") is None

    creds.save("s1", {"me": {"id": "5511"}})
    assert creds.exists("s1")
    assert creds.load("s1") == {"me": {"id": "5511"}}

    assert creds.wipe("s1") is True
    assert creds.wipe("s1") is False
    assert creds.load("s1") is None


def test_corrupt_credentials_are_ignored(tmp_path):
    creds = CredentialStore(tmp_path)
    (tmp_path / "s1.json").write_text("{oops", encoding="utf-8")
    assert creds.load("s1") is None
