import asyncio

import pytest

from topic_preview import cache as cache_module
from topic_preview.cache import HINT_STORE_KEY, ImageCache
from topic_preview.forum import FetchFailedError
from topic_preview.storage import KeyValueStore, StorageUnavailableError


class BrokenStore:
    async def get(self, key):
        raise StorageUnavailableError("broken.db", "disk gone")

    async def set(self, key, value):
        raise StorageUnavailableError("broken.db", "disk gone")


def test_get_distinguishes_unknown_from_empty():
    async def scenario():
        cache = ImageCache()
        assert cache.get("t1") is None
        await cache.put("t1", [])
        assert cache.get("t1") == []
        await cache.put("t2", ["a.png", "b.png"])
        assert cache.get("t2") == ["a.png", "b.png"]
        assert not cache.contains("t3")

    asyncio.run(scenario())


def test_get_returns_a_copy():
    async def scenario():
        cache = ImageCache()
        await cache.put("t1", ["a.png"])
        cache.get("t1").append("mutated.png")
        assert cache.get("t1") == ["a.png"]

    asyncio.run(scenario())


def test_put_persists_first_image_as_hint(tmp_path):
    async def scenario():
        store = KeyValueStore(tmp_path / "kv.db")
        try:
            cache = ImageCache(store)
            await cache.put("t7", ["first.png", "second.png"])
            record = await store.get(HINT_STORE_KEY)
            assert record["t7"]["url"] == "first.png"
            assert await cache.get_hint("t7") == "first.png"

            fresh = ImageCache(store)
            assert fresh.get("t7") is None
            assert await fresh.get_hint("t7") == "first.png"
        finally:
            await store.close()

    asyncio.run(scenario())


def test_overlapping_hint_writes_keep_every_topic(tmp_path):
    async def scenario():
        store = KeyValueStore(tmp_path / "kv.db")
        try:
            cache = ImageCache(store)
            await asyncio.gather(
                cache.put("t1", ["one.png"]),
                cache.put("t2", ["two.png"]),
                cache.get_hint("t3"),
                cache.set_hint("t4", "four.png"),
            )
            record = await store.get(HINT_STORE_KEY)
            assert set(record) == {"t1", "t2", "t4"}
        finally:
            await store.close()

    asyncio.run(scenario())

def test_expired_hint_is_absent_and_purged(tmp_path, monkeypatch):
    async def scenario():
        store = KeyValueStore(tmp_path / "kv.db")
        try:
            cache = ImageCache(store, ttl_seconds=48 * 3600)
            monkeypatch.setattr(cache_module.time, "time", lambda: 1_000_000.0)
            await cache.set_hint("t1", "old.png")
            await cache.set_hint("t2", "recent.png")

            monkeypatch.setattr(cache_module.time, "time", lambda: 1_000_000.0 + 49 * 3600)
            record = await store.get(HINT_STORE_KEY)
            record["t2"]["timestamp"] = 1_000_000.0 + 48 * 3600
            await store.set(HINT_STORE_KEY, record)

            assert await cache.get_hint("t1") is None
            assert "t1" not in await store.get(HINT_STORE_KEY)
            assert await cache.get_hint("t2") == "recent.png"
        finally:
            await store.close()

    asyncio.run(scenario())


def test_unavailable_storage_degrades_to_memory():
    async def scenario():
        cache = ImageCache(BrokenStore())
        await cache.put("t1", ["a.png"])
        await cache.set_hint("t2", "b.png")
        assert cache.get("t1") == ["a.png"]
        assert await cache.get_hint("t1") is None

    asyncio.run(scenario())


def test_resolve_shares_one_fetch_for_concurrent_callers():
    calls = []

    async def fetch(url):
        calls.append(url)
        await asyncio.sleep(0.01)
        return ["a.png"]

    async def scenario():
        cache = ImageCache()
        first, second = await asyncio.gather(
            cache.resolve("t1", "/t/x/1", fetch),
            cache.resolve("t1", "/t/x/1", fetch),
        )
        assert first == second == ["a.png"]
        assert await cache.resolve("t1", "/t/x/1", fetch) == ["a.png"]

    asyncio.run(scenario())
    assert calls == ["/t/x/1"]


@pytest.mark.parametrize(
    "error",
    [FetchFailedError("/t/x/1", status_code=500), ValueError("unparseable")],
)
def test_resolve_caches_failures_as_empty(error):
    calls = []

    async def fetch(url):
        calls.append(url)
        raise error

    async def scenario():
        cache = ImageCache()
        assert await cache.resolve("t1", "/t/x/1", fetch) == []
        assert cache.get("t1") == []
        assert await cache.resolve("t1", "/t/x/1", fetch) == []

    asyncio.run(scenario())
    assert len(calls) == 1
