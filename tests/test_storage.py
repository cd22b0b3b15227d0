"""
LAN Hub - Local store tests.
"""

import pytest

from lanhub.storage import LocalStore


@pytest.mark.asyncio
async def test_set_get_and_reload(temp_dir):
    store = LocalStore(temp_dir)
    await store.set("users", [{"id": "u1"}])

    assert store.get("users") == [{"id": "u1"}]
    assert LocalStore(temp_dir).get("users") == [{"id": "u1"}]


@pytest.mark.asyncio
async def test_get_returns_a_copy(temp_dir):
    store = LocalStore(temp_dir)
    await store.set("rooms", [{"id": "r1"}])

    store.get("rooms").append({"id": "r2"})

    assert store.get("rooms") == [{"id": "r1"}]


def test_missing_key_returns_default(temp_dir):
    store = LocalStore(temp_dir)
    assert store.get("nothing") is None
    assert store.get("nothing", []) == []


@pytest.mark.asyncio
async def test_append_unique_and_limit(temp_dir):
    store = LocalStore(temp_dir)

    assert await store.append("users", {"id": "1", "username": "alice"}, unique_by="username")
    assert not await store.append("users", {"id": "2", "username": "alice"}, unique_by="username")

    for i in range(5):
        await store.append("log", {"n": i}, limit=3)
    assert [e["n"] for e in store.get("log")] == [2, 3, 4]


@pytest.mark.asyncio
async def test_update_and_remove_items(temp_dir):
    store = LocalStore(temp_dir)
    await store.set("transfers", [{"id": "t1", "progress": 0}, {"id": "t2", "progress": 0}])

    assert await store.update_item("transfers", "t1", {"progress": 50})
    assert not await store.update_item("transfers", "t9", {"progress": 50})
    assert await store.remove_item("transfers", "t2")
    assert not await store.remove_item("transfers", "t2")

    assert store.get("transfers") == [{"id": "t1", "progress": 50}]


@pytest.mark.asyncio
async def test_delete(temp_dir):
    store = LocalStore(temp_dir)
    await store.set("counter", 2)
    assert store.get("counter") == 2

    await store.delete("counter")
    assert store.get("counter") is None
    assert not (temp_dir / "counter.json").exists()


def test_corrupted_document_treated_as_empty(temp_dir):
    (temp_dir / "messages.json").write_text("{broken")
    assert LocalStore(temp_dir).get("messages", []) == []
