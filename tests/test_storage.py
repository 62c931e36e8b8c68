import asyncio

import pytest

from topic_preview.storage import KeyValueStore, StorageUnavailableError


def test_values_survive_reopening(tmp_path):
    path = tmp_path / "nested" / "kv.db"

    async def write():
        store = KeyValueStore(path)
        await store.set("thumbs", {"t1": {"url": "a.png", "timestamp": 1.5}})
        await store.close()

    async def read():
        store = KeyValueStore(path)
        try:
            return await store.get("thumbs")
        finally:
            await store.close()

    asyncio.run(write())
    assert asyncio.run(read()) == {"t1": {"url": "a.png", "timestamp": 1.5}}


def test_missing_and_deleted_keys(tmp_path):
    async def scenario():
        store = KeyValueStore(tmp_path / "kv.db")
        try:
            assert await store.get("absent") is None
            await store.set("key", [1, 2])
            await store.set("key", [3])
            assert await store.get("key") == [3]
            await store.delete("key")
            assert await store.get("key") is None
        finally:
            await store.close()

    asyncio.run(scenario())


def test_closed_store_is_unavailable(tmp_path):
    async def scenario():
        store = KeyValueStore(tmp_path / "kv.db")
        await store.close()
        await store.close()
        with pytest.raises(StorageUnavailableError):
            await store.get("key")

    asyncio.run(scenario())


def test_unopenable_path_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    with pytest.raises(StorageUnavailableError) as excinfo:
        KeyValueStore(blocker / "kv.db")

    assert excinfo.value.path == blocker / "kv.db"


def test_unserialisable_values_are_rejected(tmp_path):
    async def scenario():
        store = KeyValueStore(tmp_path / "kv.db")
        try:
            with pytest.raises(StorageUnavailableError):
                await store.set("key", {"bad": object()})
        finally:
            await store.close()

    asyncio.run(scenario())
