"""Serialized, debounced queue of topics waiting for their first preview."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .tokens import OperationToken

LOGGER = logging.getLogger(__name__)


DEFAULT_FETCH_DELAY = 0.7
DEFAULT_DEBOUNCE = 0.1


@dataclass(slots=True)
class QueueItem:
    """A topic awaiting extraction.

    Rows are not referenced directly; the handler looks the row up by topic
    id when the item is serviced and skips it if the row has left the page.
    """

    topic_id: str
    topic_url: str
    enqueued_at: float = field(default_factory=time.time)


# The handler returns False when the item's row is gone and nothing was fetched.
QueueHandler = Callable[[QueueItem], Awaitable[bool]]


class PrefetchQueue:
    """FIFO worklist drained one item at a time with a pacing delay."""

    def __init__(
        self,
        handler: QueueHandler,
        *,
        fetch_delay: float = DEFAULT_FETCH_DELAY,
        debounce: float = DEFAULT_DEBOUNCE,
    ) -> None:
        self.handler = handler
        self.fetch_delay = fetch_delay
        self.debounce = debounce
        self.processed = 0
        self._items: deque[QueueItem] = deque()
        self._current: Optional[QueueItem] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._drain_token: Optional[OperationToken] = None
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, topic_id: object) -> bool:
        return any(item.topic_id == topic_id for item in self._items)

    @property
    def draining(self) -> bool:
        return self._drain_token is not None and self._drain_token.pending

    @property
    def current(self) -> Optional[QueueItem]:
        return self._current

    def snapshot(self) -> list[QueueItem]:
        return list(self._items)

    def enqueue(self, item: QueueItem) -> bool:
        """Queue *item* unless its topic is already waiting."""

        if item.topic_id in self:
            return False
        self._items.append(item)
        self.schedule()
        return True

    def schedule(self) -> None:
        """(Re)start the debounce timer that kicks off draining."""

        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce, self._start_drain)

    def _start_drain(self) -> None:
        self._timer = None
        if self.draining or not self._items:
            return
        token = OperationToken("drain")
        self._drain_token = token
        self._task = asyncio.get_running_loop().create_task(
            self._drain(token), name="prefetch-queue"
        )

    async def _drain(self, token: OperationToken) -> None:
        try:
            while self._items:
                item = self._items.popleft()
                self._current = item
                try:
                    serviced = await self.handler(item)
                except Exception:
                    LOGGER.exception("Prefetch of %s failed", item.topic_id)
                    serviced = True
                finally:
                    self._current = None
                if not serviced:
                    LOGGER.debug("Skipped %s; its row left the page", item.topic_id)
                    continue
                self.processed += 1
                if self._items and self.fetch_delay > 0:
                    await asyncio.sleep(self.fetch_delay)
        finally:
            token.settle()

    async def join(self) -> None:
        """Wait until the pending debounce and any running drain have finished."""

        while self._timer is not None or self.draining:
            task = self._task
            if self.draining and task is not None:
                await asyncio.shield(task)
            else:
                await asyncio.sleep(self.debounce or 0)

    async def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._items.clear()


__all__ = [
    "DEFAULT_DEBOUNCE",
    "DEFAULT_FETCH_DELAY",
    "PrefetchQueue",
    "QueueItem",
]
