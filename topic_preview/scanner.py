"""Annotates topic rows with preview thumbnails or placeholders."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from bs4.element import Tag

from .cache import ImageCache, ImageFetcher
from .config import PreviewConfig
from .extractor import topic_id_from_url
from .forum import ImageLoader
from .page import ElementEvent, Page
from .queue import PrefetchQueue, QueueItem

LOGGER = logging.getLogger(__name__)


PROCESSED_ATTR = "data-preview-processed"
TOPIC_KEY_ATTR = "data-topic-id-key"
CLICKABLE_ATTR = "data-clickable"
NO_ID_KEY = "no-id"

PREVIEW_CONTAINER_CLASS = "topic-preview-container"
PREVIEW_THUMBNAIL_CLASS = "topic-preview-thumbnail"
PREVIEW_PLACEHOLDER_CLASS = "topic-preview-placeholder"
PREVIEW_LOADING_CLASS = "topic-preview-loading"

GalleryOpener = Callable[[str, str, Optional[str], Optional[str]], None]


@dataclass(slots=True)
class TopicDetails:
    title: str
    author: str
    link: Optional[Tag]


class TopicScanner:
    def __init__(
        self,
        page: Page,
        config: PreviewConfig,
        cache: ImageCache,
        fetch: ImageFetcher,
        *,
        open_gallery: Optional[GalleryOpener] = None,
        loader: Optional[ImageLoader] = None,
    ) -> None:
        self.page = page
        self.selectors = config.selectors
        self.texts = config.texts
        self.cache = cache
        self.fetch = fetch
        self.open_gallery = open_gallery
        self.loader = loader
        self.thumbnail_size = config.options.thumbnail_size
        self._tasks: set[asyncio.Task] = set()
        self.initial_images: dict[str, str] = {}
        self.queue = PrefetchQueue(
            self.refresh_row,
            fetch_delay=config.options.fetch_delay,
            debounce=config.options.queue_debounce,
        )

    # -- lookups -----------------------------------------------------------------

    def _link_in_cell_selector(self, suffix: str = "") -> str:
        cells = [part.strip() for part in self.selectors.topic_cell.split(",") if part.strip()]
        link = f"{self.selectors.topic_link}{suffix}"
        return ", ".join(f"{cell} {link}" for cell in cells)

    def unprocessed_links(self) -> list[Tag]:
        return self.page.select(self._link_in_cell_selector(f':not([{PROCESSED_ATTR}="true"])'))

    def _settled_container(self, row: Tag) -> Optional[Tag]:
        return row.select_one(f".{PREVIEW_CONTAINER_CLASS}:not(.{PREVIEW_LOADING_CLASS})")

    def _any_container(self, row: Tag) -> Optional[Tag]:
        return row.select_one(f".{PREVIEW_CONTAINER_CLASS}")

    def _loading_selector(self, topic_id: str) -> str:
        return (
            f'.{PREVIEW_CONTAINER_CLASS}.{PREVIEW_LOADING_CLASS}'
            f'[{TOPIC_KEY_ATTR}="{topic_id}"]'
        )

    def containers_for(self, topic_id: str) -> list[Tag]:
        return self.page.select(f'.{PREVIEW_CONTAINER_CLASS}[{TOPIC_KEY_ATTR}="{topic_id}"]')

    def topic_details(self, row: Optional[Tag]) -> TopicDetails:
        if row is None:
            return TopicDetails(title="Unknown Topic", author="User", link=None)
        link = row.select_one(self.selectors.topic_link)
        avatar = row.select_one(self.selectors.avatar_image)
        author = "User"
        if avatar is not None and avatar.get("title"):
            name = str(avatar["title"]).split(" - ")[0].strip()
            if name:
                author = name
        else:
            meta = row.select_one(self.selectors.topic_meta)
            name = meta.get_text(" ", strip=True) if meta is not None else ""
            if name:
                author = name
        title = link.get_text(strip=True) if link is not None else ""
        return TopicDetails(title=title or "Unknown Topic", author=author, link=link)

    # -- scanning ----------------------------------------------------------------

    async def scan(self, initial_images: Optional[dict[str, str]] = None) -> int:
        """Annotate every topic link not yet marked as processed.

        Returns the number of links that were considered.
        """

        if initial_images is not None:
            self.initial_images = initial_images
        considered = 0
        for link in self.unprocessed_links():
            row = link.css.closest(self.selectors.topic_row)
            if row is not None and "/t/" in (link.get("href") or ""):
                considered += 1
                try:
                    await self.add_initial_preview(link)
                except Exception:
                    LOGGER.exception("Annotating %s failed", link.get("href"))
            elif link.get(PROCESSED_ATTR) != "true":
                link[PROCESSED_ATTR] = "true"
        return considered

    def mark_all_unprocessed(self) -> None:
        for link in self.page.select(f'{self.selectors.topic_link}[{PROCESSED_ATTR}="true"]'):
            del link[PROCESSED_ATTR]

    async def add_initial_preview(self, link: Tag) -> None:
        if not link.get("href") or link.get(PROCESSED_ATTR) == "true":
            return
        row = link.css.closest(self.selectors.topic_row)
        cell = link.css.closest(self.selectors.topic_cell)
        if row is None or cell is None:
            link[PROCESSED_ATTR] = "true"
            return
        if self._settled_container(row) is not None:
            link[PROCESSED_ATTR] = "true"
            return

        topic_url = self.page.absolute_url(link["href"])
        topic_id = topic_id_from_url(topic_url)
        link[PROCESSED_ATTR] = "true"

        if topic_id is None:
            LOGGER.warning("Topic link without an id: %s", topic_url)
            self.add_placeholder(row, link, self.texts.symbol_no_id, self.texts.placeholder_no_id)
            return

        images = self.cache.get(topic_id)
        if images:
            self._insert_thumbnail(row, cell, topic_id, topic_url, images[0])
            return
        if images is not None:
            self.add_placeholder(
                row, link, self.texts.symbol_view, self.texts.placeholder_no_images,
                topic_id, topic_url,
            )
            return

        initial = self.initial_images.get(topic_id)
        if initial:
            self._insert_thumbnail(row, cell, topic_id, topic_url, initial)
            await self.cache.set_hint(topic_id, initial)
            return

        hint = await self.cache.get_hint(topic_id)
        if hint:
            self._insert_thumbnail(row, cell, topic_id, topic_url, hint)
            return

        self.add_placeholder(
            row, link, self.texts.symbol_loading, self.texts.placeholder_loading,
            topic_id, topic_url, loading=True,
        )
        self.queue.enqueue(QueueItem(topic_id=topic_id, topic_url=topic_url))

    # -- rendering ---------------------------------------------------------------

    def _insert_thumbnail(
        self, row: Tag, cell: Tag, topic_id: str, topic_url: str, image_url: str
    ) -> None:
        if self._any_container(row) is not None:
            return
        container = self.create_thumbnail(topic_id, topic_url, image_url)
        self.page.insert_first(cell, container)
        self._check_thumbnail(container)

    def _container_style(self, clickable: bool) -> str:
        style = f"width: {self.thumbnail_size}px; height: {self.thumbnail_size}px"
        return style if clickable else f"{style}; cursor: default"

    def _check_thumbnail(self, container: Tag) -> None:
        """Load the thumbnail image and fire its ``error`` event if that fails."""

        thumbnail = container.select_one(f".{PREVIEW_THUMBNAIL_CLASS}")
        if self.loader is None or thumbnail is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._load_thumbnail(thumbnail), name=f"thumbnail:{thumbnail.get('src')}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _load_thumbnail(self, thumbnail: Tag) -> None:
        if await self.loader.load(str(thumbnail.get("src") or "")):
            return
        if self.page.contains(thumbnail):
            self.page.dispatch(thumbnail, "error")

    def create_thumbnail(self, topic_id: str, topic_url: str, image_url: str) -> Tag:
        container = self.page.new_tag(
            "div",
            classes=[PREVIEW_CONTAINER_CLASS],
            attrs={
                "title": self.texts.gallery_title,
                "style": self._container_style(True),
                TOPIC_KEY_ATTR: topic_id,
                CLICKABLE_ATTR: "true",
            },
        )
        thumbnail = self.page.new_tag(
            "img",
            classes=[PREVIEW_THUMBNAIL_CLASS],
            attrs={"src": image_url, "loading": "lazy", "alt": self.texts.thumbnail_alt},
        )
        container.append(thumbnail)

        def on_error(event: ElementEvent) -> None:
            self._thumbnail_failed(container, thumbnail, topic_id, topic_url)

        self.page.add_listener(thumbnail, "error", on_error)
        self.page.add_listener(container, "click", self._click_handler(container, topic_id, topic_url))
        return container

    def add_placeholder(
        self,
        row: Tag,
        link: Tag,
        symbol: str,
        title: str,
        topic_id: Optional[str] = None,
        topic_url: Optional[str] = None,
        *,
        loading: bool = False,
    ) -> Optional[Tag]:
        cell = link.css.closest(self.selectors.topic_cell)
        if cell is None:
            return None
        if self._settled_container(row) is not None:
            if link.get(PROCESSED_ATTR) != "true":
                link[PROCESSED_ATTR] = "true"
            return None
        if topic_id:
            existing = row.select_one(self._loading_selector(topic_id))
            if existing is not None:
                self.page.remove(existing)
        link[PROCESSED_ATTR] = "true"
        if self._any_container(row) is not None:
            return None

        classes = [PREVIEW_CONTAINER_CLASS]
        if loading:
            classes.append(PREVIEW_LOADING_CLASS)
        container = self.page.new_tag(
            "div",
            classes=classes,
            attrs={"title": title, TOPIC_KEY_ATTR: topic_id or NO_ID_KEY},
        )
        marker = self.page.new_tag(
            "span",
            classes=[PREVIEW_PLACEHOLDER_CLASS],
            text=self.texts.symbol_loading if loading else symbol,
        )
        container.append(marker)
        clickable = bool(topic_id and topic_url and not loading and symbol != self.texts.symbol_no_id)
        container["style"] = self._container_style(clickable)
        if clickable:
            container[CLICKABLE_ATTR] = "true"
            self.page.add_listener(container, "click", self._click_handler(container, topic_id, topic_url))

        self.page.insert_first(cell, container)
        return container

    def _click_handler(
        self, container: Tag, topic_id: str, topic_url: str
    ) -> Callable[[ElementEvent], None]:
        def handle(event: ElementEvent) -> None:
            event.prevent_default()
            event.stop_propagation()
            if self.open_gallery is None:
                return
            row = container.css.closest(self.selectors.topic_row)
            if row is None:
                self.open_gallery(topic_id, topic_url, None, None)
                return
            details = self.topic_details(row)
            self.open_gallery(topic_id, topic_url, details.title, details.author)

        return handle

    def _thumbnail_failed(
        self, container: Tag, thumbnail: Tag, topic_id: str, topic_url: str
    ) -> None:
        LOGGER.warning("Thumbnail %s for %s failed to load", thumbnail.get("src"), topic_id)
        if not self.page.contains(container):
            return
        row = container.css.closest(self.selectors.topic_row)
        self.page.remove(container)
        if row is None:
            return
        details = self.topic_details(row)
        if details.link is not None and self._any_container(row) is None:
            self.add_placeholder(
                row, details.link, self.texts.symbol_error, self.texts.placeholder_error,
                topic_id, topic_url,
            )

    # -- queue service -----------------------------------------------------------

    async def refresh_row(self, item: QueueItem) -> bool:
        """Resolve a queued topic and swap its loading placeholders.

        Rows are looked up by topic id; when none is on the page any more the
        item is skipped without fetching and ``False`` is returned.
        """

        rows = []
        for placeholder in self.page.select(self._loading_selector(item.topic_id)):
            row = placeholder.css.closest(self.selectors.topic_row)
            if row is not None and not any(row is seen for seen in rows):
                rows.append(row)
        if not rows:
            return False

        images = await self.cache.resolve(item.topic_id, item.topic_url, self.fetch)

        for row in rows:
            current = row.select_one(f'.{PREVIEW_CONTAINER_CLASS}[{TOPIC_KEY_ATTR}="{item.topic_id}"]')
            if current is None or not self.page.contains(current):
                continue
            if images:
                thumbnail = self.create_thumbnail(item.topic_id, item.topic_url, images[0])
                self.page.replace(current, thumbnail)
                self._check_thumbnail(thumbnail)
                continue
            self.page.remove(current)
            link = row.select_one(self.selectors.topic_link)
            if link is not None:
                self.add_placeholder(
                    row, link, self.texts.symbol_view, self.texts.placeholder_no_images,
                    item.topic_id, item.topic_url,
                )
        return True

    async def settle(self) -> None:
        """Wait for pending thumbnail loads."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.queue.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = [
    "CLICKABLE_ATTR",
    "PREVIEW_CONTAINER_CLASS",
    "PREVIEW_LOADING_CLASS",
    "PREVIEW_PLACEHOLDER_CLASS",
    "PREVIEW_THUMBNAIL_CLASS",
    "PROCESSED_ATTR",
    "TOPIC_KEY_ATTR",
    "TopicDetails",
    "TopicScanner",
]
