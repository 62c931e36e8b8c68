"""Two tier cache of resolved topic images.

The memory tier maps a topic id to its full ordered image list. A missing
entry means the topic has not been checked yet; an empty list means it was
checked and has no content images. The persistent tier only keeps the first
image of each topic as a hint with a time-to-live, so thumbnails can be drawn
immediately on the next page load.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from .forum import FetchFailedError
from .storage import KeyValueStore, StorageUnavailableError

LOGGER = logging.getLogger(__name__)


HINT_STORE_KEY = "thumb_url_cache_v1"
DEFAULT_TTL_SECONDS = 48 * 60 * 60

ImageFetcher = Callable[[str], Awaitable[list[str]]]


class ImageCache:
    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._images: dict[str, list[str]] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._hints_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._images)

    def get(self, topic_id: str) -> Optional[list[str]]:
        images = self._images.get(topic_id)
        return list(images) if images is not None else None

    def contains(self, topic_id: str) -> bool:
        return topic_id in self._images

    async def put(self, topic_id: str, images: Sequence[str]) -> None:
        self._images[topic_id] = list(images)
        if images:
            await self.set_hint(topic_id, images[0])

    async def resolve(self, topic_id: str, topic_url: str, fetch: ImageFetcher) -> list[str]:
        """Return the cached images for *topic_id*, fetching them once if unknown.

        Concurrent callers for the same topic share one fetch. A failed fetch
        is cached as an empty list and is not retried.
        """

        cached = self.get(topic_id)
        if cached is not None:
            return cached
        pending = self._inflight.get(topic_id)
        if pending is not None:
            return list(await asyncio.shield(pending))

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[topic_id] = future
        try:
            try:
                images = await fetch(topic_url)
            except FetchFailedError as exc:
                LOGGER.warning("Could not fetch images for %s: %s", topic_id, exc)
                images = []
            except Exception:
                LOGGER.exception("Extracting images for %s failed", topic_id)
                images = []
            await self.put(topic_id, images)
            future.set_result(list(images))
            return list(images)
        finally:
            if not future.done():
                future.set_result([])
            self._inflight.pop(topic_id, None)

    async def _load_hints(self) -> Optional[dict]:
        if self.store is None:
            return None
        try:
            record = await self.store.get(HINT_STORE_KEY)
        except StorageUnavailableError as exc:
            LOGGER.warning("Hint cache read failed: %s", exc)
            return None
        return record if isinstance(record, dict) else {}

    async def _save_hints(self, record: dict) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(HINT_STORE_KEY, record)
        except StorageUnavailableError as exc:
            LOGGER.warning("Hint cache write failed: %s", exc)

    async def get_hint(self, topic_id: str) -> Optional[str]:
        """Return the persisted first image for *topic_id* if still fresh.

        Expired or malformed entries are removed from the stored record.
        """

        async with self._hints_lock:
            record = await self._load_hints()
            if not record:
                return None
            entry = record.get(topic_id)
            if entry is None:
                return None
            if isinstance(entry, dict):
                url = entry.get("url")
                timestamp = entry.get("timestamp")
                if url and isinstance(timestamp, (int, float)):
                    if time.time() - timestamp < self.ttl_seconds:
                        return str(url)
            record.pop(topic_id, None)
            await self._save_hints(record)
            return None

    async def set_hint(self, topic_id: str, url: str) -> None:
        if not topic_id or not url:
            return
        # The record is rewritten whole, so reads and writes must not interleave.
        async with self._hints_lock:
            record = await self._load_hints()
            if record is None:
                return
            record[topic_id] = {"url": url, "timestamp": time.time()}
            await self._save_hints(record)


__all__ = ["DEFAULT_TTL_SECONDS", "HINT_STORE_KEY", "ImageCache"]
