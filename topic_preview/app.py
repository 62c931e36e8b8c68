"""Wires cache, queue, scanner, gallery and reconciler onto one page."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from .cache import ImageCache
from .config import PreviewConfig
from .downloads import DirectorySaver, FileSaver
from .extractor import initial_image_map
from .forum import FetchFailedError, ForumClient, ImageLoader
from .gallery import GalleryController, GalleryState
from .page import KeyEvent, Page
from .queue import QueueItem
from .reconciler import MutationReconciler
from .scanner import CLICKABLE_ATTR, PREVIEW_CONTAINER_CLASS, TOPIC_KEY_ATTR, TopicScanner
from .storage import KeyValueStore, StorageUnavailableError

LOGGER = logging.getLogger(__name__)


EMPTY_PAGE = "<html><head></head><body></body></html>"


@dataclass
class PreviewStatus:
    started: bool
    url: str
    persistent_cache: bool
    observed_root: Optional[str]
    significant_changes: int
    cached_topics: int
    queue_size: int
    queue: list[QueueItem] = field(default_factory=list)
    queue_current: Optional[str] = None
    queue_processed: int = 0
    listeners: int = 0
    gallery: GalleryState = field(default_factory=GalleryState)
    gallery_visible: bool = False
    gallery_status: str = ""
    gallery_image: str = ""


class PreviewManager:
    def __init__(
        self,
        config: PreviewConfig,
        page: Optional[Page] = None,
        *,
        client: Optional[ForumClient] = None,
        store: Optional[KeyValueStore] = None,
        saver: Optional[FileSaver] = None,
        loader: Optional[ImageLoader] = None,
    ) -> None:
        options = config.options
        self.config = config
        self.page = page or Page(EMPTY_PAGE, url=options.base_url)
        self.client = client or ForumClient(
            base_url=options.base_url,
            user_agent=options.user_agent,
            selectors=config.selectors,
        )
        self._owns_client = client is None
        self.store = store
        self._owns_store = store is None
        self.cache = ImageCache(store, ttl_seconds=options.cache_ttl_seconds)
        self.loader = loader or ImageLoader(self.client)
        self.saver = saver or DirectorySaver(options.download_dir)
        self.gallery = GalleryController(
            self.page, config, self.cache, self.client, self.loader, self.saver
        )
        self.scanner = TopicScanner(
            self.page,
            config,
            self.cache,
            self.client.fetch_topic_images,
            open_gallery=self.gallery.request_open,
            loader=self.loader,
        )
        self.reconciler = MutationReconciler(self.page, config, self.scanner, self.gallery)
        self.started = False
        self._retry: Optional[asyncio.TimerHandle] = None

    @classmethod
    async def from_url(
        cls, config: PreviewConfig, url: Optional[str] = None, **kwargs
    ) -> "PreviewManager":
        """Build a manager around the listing page at *url*.

        A listing that cannot be fetched yields an empty page; navigation can
        load one later.
        """

        client = kwargs.pop("client", None)
        owns_client = client is None
        if client is None:
            client = ForumClient(
                base_url=config.options.base_url,
                user_agent=config.options.user_agent,
                selectors=config.selectors,
            )
        target = url or client.absolute_url(config.options.listing_path)
        try:
            html = await client.fetch_page_html(target)
        except FetchFailedError as exc:
            LOGGER.warning("Starting with an empty page: %s", exc)
            html = EMPTY_PAGE
        manager = cls(config, Page(html, url=target), client=client, **kwargs)
        manager._owns_client = owns_client
        return manager

    def _open_store(self) -> None:
        if self.store is not None or not self._owns_store:
            return
        try:
            self.store = KeyValueStore(self.config.options.storage_path)
        except StorageUnavailableError as exc:
            LOGGER.warning("Persistent hints disabled, using memory only: %s", exc)
            return
        self.cache.store = self.store

    async def start(self) -> bool:
        if self.started:
            return True
        LOGGER.info("Starting topic previews on %s", self.page.url or "a blank page")
        try:
            self._open_store()
            if not self.gallery.ensure_mounted():
                LOGGER.warning("Gallery unavailable until the page has a body")
            initial = initial_image_map(self.page.soup, self.config.selectors)
            considered = await self.scanner.scan(initial)
            LOGGER.info("Annotated %d topic links", considered)
            if not self.reconciler.start():
                delay = self.config.options.observer_retry_delay
                LOGGER.warning("Observer target not found; retrying in %.1fs", delay)
                self._retry = asyncio.get_running_loop().call_later(delay, self._retry_observer)
        except Exception:
            LOGGER.exception("Topic previews failed to initialise")
            self.page.alert("Error: Could not initialize image previews.")
            return False
        self.started = True
        return True

    def _retry_observer(self) -> None:
        self._retry = None
        if not self.reconciler.start():
            LOGGER.error("Observer target still missing; page changes will be ignored")

    async def close(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        await self.reconciler.aclose()
        await self.scanner.aclose()
        await self.gallery.aclose()
        await self.loader.aclose()
        if self._owns_client:
            await self.client.aclose()
        if self._owns_store and self.store is not None:
            await self.store.close()
            self.store = None
            self.cache.store = None
        self.started = False

    async def navigate(self, url: Optional[str] = None, *, replace_outlet: bool = False) -> str:
        """Load another listing into the page the way in-app navigation does."""

        target = self.client.absolute_url(url or self.config.options.listing_path)
        html = await self.client.fetch_page_html(target)
        selectors = self.config.selectors
        self.page.navigate(
            html,
            url=target,
            replace_outlet=replace_outlet,
            outlet_selector=selectors.main_outlet,
            preloaded_selector=selectors.preloaded_data,
        )
        return target

    def click_topic(self, topic_id: str) -> bool:
        selector = (
            f'.{PREVIEW_CONTAINER_CLASS}[{TOPIC_KEY_ATTR}="{topic_id}"][{CLICKABLE_ATTR}="true"]'
        )
        container = self.page.select_one(selector)
        if container is None:
            return False
        self.page.click(container)
        return True

    def press_key(self, key: str) -> KeyEvent:
        return self.page.press_key(key)

    async def settle(self, *, include_queue: bool = False) -> None:
        """Wait for pending observer batches and the work they started."""

        await asyncio.sleep(0)
        await self.reconciler.settle()
        if include_queue:
            await self.scanner.queue.join()
        await self.scanner.settle()
        await self.gallery.settle()

    def render(self) -> str:
        return str(self.page.soup)

    def status(self) -> PreviewStatus:
        queue = self.scanner.queue
        current = queue.current
        root = self.reconciler.root
        gallery_state = replace(self.gallery.state, images=list(self.gallery.state.images))
        return PreviewStatus(
            started=self.started,
            url=self.page.url,
            persistent_cache=self.cache.store is not None,
            observed_root=(root.get("id") or root.name) if root is not None else None,
            significant_changes=self.reconciler.significant_changes,
            cached_topics=len(self.cache),
            queue_size=len(queue),
            queue=queue.snapshot(),
            queue_current=current.topic_id if current is not None else None,
            queue_processed=queue.processed,
            listeners=self.page.listener_count,
            gallery=gallery_state,
            gallery_visible=self.gallery.visible,
            gallery_status=self.gallery.status_text,
            gallery_image=self.gallery.image_source,
        )


__all__ = ["EMPTY_PAGE", "PreviewManager", "PreviewStatus"]
