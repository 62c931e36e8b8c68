"""Keeps the annotations consistent while the host page rewrites itself."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Iterable, Optional

from bs4.element import Tag

from .config import PreviewConfig
from .extractor import initial_image_map
from .gallery import GalleryController
from .page import MutationRecord, Page, PageObserver
from .scanner import PROCESSED_ATTR, TopicScanner

LOGGER = logging.getLogger(__name__)


def is_significant_change(
    records: Iterable[MutationRecord],
    root: Optional[Tag],
    *,
    outlet_id: Optional[str],
    threshold: int,
) -> bool:
    """Return ``True`` when a batch looks like in-app navigation.

    That is the case when the main content element itself was added or
    removed, or when a single change to *root* added or removed more than
    *threshold* direct children.
    """

    for record in records:
        if record.type != "childList":
            continue
        if outlet_id and any(
            isinstance(node, Tag) and node.get("id") == outlet_id
            for node in (*record.added, *record.removed)
        ):
            return True
        if root is not None and record.target is root:
            if len(record.added) > threshold or len(record.removed) > threshold:
                return True
    return False


class MutationReconciler:
    def __init__(
        self,
        page: Page,
        config: PreviewConfig,
        scanner: TopicScanner,
        gallery: GalleryController,
    ) -> None:
        self.page = page
        self.selectors = config.selectors
        self.threshold = config.options.significant_change_threshold
        self.scanner = scanner
        self.gallery = gallery
        self.root: Optional[Tag] = None
        self.significant_changes = 0
        self._observer = PageObserver(page, self._on_mutations)
        self._tasks: set[asyncio.Task] = set()

    @property
    def outlet_id(self) -> Optional[str]:
        selector = self.selectors.main_outlet
        return selector[1:] if selector.startswith("#") else None

    @property
    def observing(self) -> bool:
        return self.root is not None

    def resolve_root(self) -> Optional[Tag]:
        """Prefer the main content element, fall back to the body."""

        return self.page.select_one(self.selectors.main_outlet) or self.page.body

    def start(self) -> bool:
        root = self.resolve_root()
        if root is None:
            LOGGER.warning("No element to observe yet")
            return False
        self._attach(root)
        return True

    def _attach(self, root: Tag) -> None:
        self._observer.disconnect()
        self._observer.observe(root)
        self.root = root
        LOGGER.info("Observing page changes on %s", root.get("id") or root.name)

    def stop(self) -> None:
        self._observer.disconnect()
        self.root = None

    def _spawn(self, coroutine: Awaitable, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coroutine, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_mutations(self, records: list[MutationRecord], observer: PageObserver) -> None:
        current = self.resolve_root()
        body = self.page.body
        root = self.root
        detached = root is None or not self.page.contains(root)
        outlet_appeared = root is body and current is not None and current is not body
        if detached or outlet_appeared:
            LOGGER.warning("Observed element changed or detached; re-targeting")
            if current is None:
                LOGGER.error("No element left to observe")
                self.root = None
                return
            self._attach(current)

        if is_significant_change(
            records, current, outlet_id=self.outlet_id, threshold=self.threshold
        ):
            self.significant_changes += 1
            LOGGER.info("Significant page change; re-scanning topics")
            hints = initial_image_map(self.page.soup, self.selectors)
            if hints:
                self.scanner.initial_images = hints
            self.gallery.ensure_mounted()
            self.scanner.mark_all_unprocessed()
            self._spawn(self._rescan(), "topic-rescan")

        links = self._added_topic_links(records)
        if links:
            self._spawn(self._scan_links(links), "topic-scan-added")

    def _added_topic_links(self, records: Iterable[MutationRecord]) -> list[Tag]:
        selector = self.selectors.topic_link
        seen: set[int] = set()
        links: list[Tag] = []
        for record in records:
            for node in record.added:
                if not isinstance(node, Tag):
                    continue
                if node.css.match(selector):
                    candidates = [node]
                else:
                    candidates = node.select(f'{selector}:not([{PROCESSED_ATTR}="true"])')
                for link in candidates:
                    if id(link) in seen or link.get(PROCESSED_ATTR) == "true":
                        continue
                    if "/t/" not in (link.get("href") or ""):
                        continue
                    if link.css.closest(self.selectors.topic_row) is None:
                        continue
                    if not self.page.contains(link):
                        continue
                    seen.add(id(link))
                    links.append(link)
        return links

    async def _scan_links(self, links: list[Tag]) -> None:
        for link in links:
            try:
                await self.scanner.add_initial_preview(link)
            except Exception:
                LOGGER.exception("Annotating added link %s failed", link.get("href"))

    async def _rescan(self) -> None:
        try:
            await self.scanner.scan()
        except Exception:
            LOGGER.exception("Re-scanning topics failed")

    async def settle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = ["MutationReconciler", "is_significant_change"]
