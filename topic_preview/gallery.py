"""Full-screen image viewer over one topic's full resolution images."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Optional

from bs4.element import Tag

from .cache import ImageCache, ImageFetcher
from .config import PreviewConfig
from .downloads import DownloadFailedError, FileSaver, build_download_filename
from .extractor import original_image_url
from .forum import FetchFailedError, ForumClient, ImageLoader
from .page import ElementEvent, KeyEvent, Page
from .tokens import OperationToken

LOGGER = logging.getLogger(__name__)


OVERLAY_ID = "cg-gallery-overlay"
VISIBLE_CLASS = "cg-visible"
PART_CLASSES = {
    "status": "cg-gallery-status",
    "prev": "cg-gallery-prev",
    "image": "cg-gallery-image",
    "next": "cg-gallery-next",
    "close": "cg-gallery-close",
    "download": "cg-gallery-download",
}
TEXT_INPUT_TAGS = ("input", "textarea", "select")

DOWNLOAD_WARN_REVERT = 2.0
DOWNLOAD_OK_REVERT = 1.5
DOWNLOAD_ERROR_REVERT = 3.0
DOWNLOAD_PREP_REVERT = 2.0


class GalleryPhase(str, Enum):
    CLOSED = "closed"
    LOADING = "loading"
    READY = "ready"
    EMPTY = "empty"


@dataclass(slots=True)
class GalleryState:
    topic_id: Optional[str] = None
    topic_url: Optional[str] = None
    images: list[str] = field(default_factory=list)
    current_index: int = -1
    topic_title: Optional[str] = None
    author_name: Optional[str] = None
    phase: GalleryPhase = GalleryPhase.CLOSED


def _is_text_input(target: Optional[Tag]) -> bool:
    if target is None:
        return False
    if target.name in TEXT_INPUT_TAGS:
        return True
    node: Optional[Tag] = target
    while node is not None:
        editable = node.get("contenteditable") if isinstance(node, Tag) else None
        if editable is not None:
            return str(editable).lower() != "false"
        node = node.parent
    return False


class GalleryController:
    """Owns the overlay elements and the single live ``GalleryState``."""

    def __init__(
        self,
        page: Page,
        config: PreviewConfig,
        cache: ImageCache,
        client: ForumClient,
        loader: ImageLoader,
        saver: FileSaver,
        *,
        fetch: Optional[ImageFetcher] = None,
    ) -> None:
        self.page = page
        self.texts = config.texts
        self.settle_delay = config.options.image_settle_delay
        self.cache = cache
        self.client = client
        self.loader = loader
        self.saver = saver
        self.fetch = fetch or client.fetch_topic_images
        self.state = GalleryState()
        self._overlay: Optional[Tag] = None
        self._parts: dict[str, Tag] = {}
        self._display_token: Optional[OperationToken] = None
        self._timers: list[asyncio.TimerHandle] = []
        self._tasks: set[asyncio.Task] = set()

    # -- mounting ----------------------------------------------------------------

    @property
    def overlay(self) -> Optional[Tag]:
        return self._overlay

    @property
    def visible(self) -> bool:
        overlay = self._overlay
        return overlay is not None and VISIBLE_CLASS in overlay.get("class", [])

    @property
    def status_text(self) -> str:
        status = self._parts.get("status")
        return status.get_text() if status is not None else ""

    @property
    def image_source(self) -> str:
        image = self._parts.get("image")
        return str(image.get("src") or "") if image is not None else ""

    def ensure_mounted(self) -> bool:
        """Make sure the overlay and all of its controls are in the page.

        An overlay missing any of its controls is removed and rebuilt.
        Returns ``False`` only when there is no body to attach to.
        """

        overlay = self.page.select_one(f"#{OVERLAY_ID}")
        if overlay is not None:
            parts = {name: overlay.select_one(f".{cls}") for name, cls in PART_CLASSES.items()}
            if all(part is not None for part in parts.values()):
                self._overlay, self._parts = overlay, parts
                self._bind_controls()
                return True
            LOGGER.warning("Gallery overlay is missing controls; rebuilding it")
            self.page.remove(overlay)

        body = self.page.body
        if body is None:
            LOGGER.error("No document body to attach the gallery to")
            self._overlay, self._parts = None, {}
            return False

        overlay = self.page.new_tag("div", classes=[OVERLAY_ID], attrs={"id": OVERLAY_ID})
        parts = {
            "status": self.page.new_tag("div", classes=[PART_CLASSES["status"]]),
            "prev": self.page.new_tag(
                "button", classes=[PART_CLASSES["prev"]],
                attrs={"aria-label": "Previous Image"}, text=self.texts.arrow_prev,
            ),
            "image": self.page.new_tag(
                "img", classes=[PART_CLASSES["image"]], attrs={"alt": self.texts.gallery_image_alt},
            ),
            "next": self.page.new_tag(
                "button", classes=[PART_CLASSES["next"]],
                attrs={"aria-label": "Next Image"}, text=self.texts.arrow_next,
            ),
            "close": self.page.new_tag(
                "button", classes=[PART_CLASSES["close"]],
                attrs={"aria-label": "Close Gallery"}, text=self.texts.close_button,
            ),
            "download": self.page.new_tag(
                "button", classes=[PART_CLASSES["download"]],
                attrs={
                    "aria-label": "Download Image (Shortcut: S)",
                    "title": self.texts.gallery_download_title,
                },
                text=self.texts.download_button,
            ),
        }
        for part in parts.values():
            overlay.append(part)
        self.page.append_child(body, overlay)
        self._overlay, self._parts = overlay, parts
        self._bind_controls()
        LOGGER.info("Gallery overlay attached")
        return True

    def _bind_controls(self) -> None:
        self.page.add_listener(self._parts["close"], "click", self._on_close_click)
        self.page.add_listener(self._parts["prev"], "click", self._on_prev_click)
        self.page.add_listener(self._parts["next"], "click", self._on_next_click)
        self.page.add_listener(self._parts["download"], "click", self._on_download_click)

    def _on_close_click(self, event: ElementEvent) -> None:
        self.close()

    def _on_prev_click(self, event: ElementEvent) -> None:
        self.prev()

    def _on_next_click(self, event: ElementEvent) -> None:
        self.next()

    def _on_download_click(self, event: ElementEvent) -> None:
        event.stop_propagation()
        self.request_download()

    def _show_overlay(self) -> bool:
        if not self.ensure_mounted() or self._overlay is None:
            LOGGER.error("Gallery overlay is not available")
            self.page.alert("Error: Could not initialize image gallery.")
            return False
        classes = list(self._overlay.get("class", []))
        if VISIBLE_CLASS not in classes:
            classes.append(VISIBLE_CLASS)
        self._overlay["class"] = classes
        self.page.remove_key_listener(self.handle_key)
        self.page.add_key_listener(self.handle_key)
        return True

    # -- small view helpers ------------------------------------------------------

    def _set_status(self, text: str) -> None:
        status = self._parts.get("status")
        if status is not None:
            status.string = text

    def _index_status(self, compact: bool = False) -> str:
        images, index = self.state.images, self.state.current_index
        if not images or index < 0:
            return ""
        if compact:
            return f"{index + 1}/{len(images)}"
        return f"{index + 1} / {len(images)}"

    def _set_image(self, source: str, *, shown: bool) -> None:
        image = self._parts.get("image")
        if image is None:
            return
        image["src"] = source
        image["style"] = "opacity: 1" if shown else "opacity: 0"

    def _set_single(self, single: bool) -> None:
        if self._overlay is None:
            return
        self._overlay["data-single-image"] = "true" if single else "false"
        for name in ("prev", "next"):
            button = self._parts.get(name)
            if button is not None:
                button["style"] = "display: none" if single else "display: flex"

    def _show_no_images(self) -> None:
        self.state.phase = GalleryPhase.EMPTY
        self._set_image("", shown=False)
        self._set_status(self.texts.gallery_no_images)
        self._set_single(True)

    def _spawn(self, coroutine: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coroutine, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_revert(self, expected: str, restore: str, delay: float) -> None:
        def revert() -> None:
            if self.status_text == expected:
                self._set_status(restore)

        handle = asyncio.get_running_loop().call_later(delay, revert)
        self._timers = [timer for timer in self._timers if not timer.cancelled()]
        self._timers.append(handle)

    # -- lifecycle ---------------------------------------------------------------

    async def open(
        self,
        topic_id: str,
        topic_url: str,
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> None:
        if not topic_id or not topic_url:
            LOGGER.warning("Gallery open without topic id or URL")
            return
        if self.state.topic_id == topic_id and self.visible:
            self._show_overlay()
            return

        LOGGER.info("Opening gallery for %s", topic_id)
        if self._display_token is not None:
            self._display_token.settle()
        self.state = GalleryState(
            topic_id=topic_id,
            topic_url=topic_url,
            topic_title=title or "Topic",
            author_name=author or "User",
            phase=GalleryPhase.LOADING,
        )
        if not self._show_overlay():
            self.close()
            return
        try:
            self._set_image("", shown=False)
            self._set_status(self.texts.gallery_loading)
            self._set_single(True)

            images = self.cache.get(topic_id)
            if images is None:
                self._set_status(self.texts.gallery_loading_fetch)
                images = await self.cache.resolve(topic_id, topic_url, self.fetch)

            if self.state.topic_id != topic_id:
                LOGGER.debug("Gallery moved on before %s finished loading", topic_id)
                return
            if not self.page.contains(self._overlay):
                LOGGER.warning("Gallery overlay left the page while loading %s", topic_id)
                self.close()
                return

            if not images:
                self._show_no_images()
                return
            self._set_status(self.texts.gallery_loading_hq)
            self.state.images = [original_image_url(url) or url for url in images]
            self.state.current_index = 0
            self.state.phase = GalleryPhase.READY
            await self.show_current()
        except Exception:
            LOGGER.exception("Opening the gallery for %s failed", topic_id)
            self.close()

    def request_open(
        self,
        topic_id: str,
        topic_url: str,
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> asyncio.Task:
        return self._spawn(self.open(topic_id, topic_url, title, author), f"gallery-open:{topic_id}")

    def close(self) -> None:
        """Hide the overlay and reset all gallery state."""

        if self._overlay is not None:
            self._overlay["class"] = [
                cls for cls in self._overlay.get("class", []) if cls != VISIBLE_CLASS
            ]
            self._set_image("", shown=False)
            self._set_status("")
        self._reset()

    def _reset(self) -> None:
        if self._display_token is not None:
            self._display_token.settle()
            self._display_token = None
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self.state = GalleryState()
        self.page.remove_key_listener(self.handle_key)

    # -- navigation --------------------------------------------------------------

    def next(self) -> None:
        count = len(self.state.images)
        if count == 0:
            return
        self.state.current_index = (self.state.current_index + 1) % count
        self._spawn(self.show_current(), "gallery-show")

    def prev(self) -> None:
        count = len(self.state.images)
        if count == 0:
            return
        self.state.current_index = (self.state.current_index - 1 + count) % count
        self._spawn(self.show_current(), "gallery-show")

    async def show_current(self) -> None:
        """Display the image at the current index.

        Every call gets its own one-shot token and settles the previous one,
        so a load that finishes after a newer call never touches the view.
        """

        if self._overlay is None or not self._parts:
            LOGGER.error("Gallery controls are missing; closing")
            self.close()
            return
        if self._display_token is not None:
            self._display_token.settle()
        token = OperationToken(f"display:{self.state.current_index}")
        self._display_token = token

        images, index = list(self.state.images), self.state.current_index
        if not images or index < 0:
            self._show_no_images()
            return
        total = len(images)
        url = images[index]
        self._set_image("", shown=False)

        await asyncio.sleep(self.settle_delay)
        if not token.pending:
            return
        if not self.page.contains(self._overlay):
            LOGGER.warning("Gallery overlay disappeared before showing image %d", index + 1)
            token.settle()
            return

        self._set_image(url, shown=False)
        self._set_status(f"{index + 1} / {total}")
        self._set_single(total <= 1)

        loaded = await self.loader.load(url)
        if not token.settle():
            return
        if loaded:
            self._set_image(url, shown=True)
            self._preload_adjacent()
        else:
            LOGGER.warning("Gallery image failed to load: %s", url)
            self._set_status(f"Error {index + 1}/{total}")
            self._set_image(url, shown=True)

    def _preload_adjacent(self) -> None:
        images = self.state.images
        count = len(images)
        if count <= 1:
            return
        current = self.state.current_index
        following = (current + 1) % count
        preceding = (current - 1 + count) % count
        if following != current:
            self.loader.preload(images[following])
        if preceding not in (current, following):
            self.loader.preload(images[preceding])

    # -- input -------------------------------------------------------------------

    def handle_key(self, event: KeyEvent) -> None:
        if self._overlay is not None and not self.page.contains(self._overlay):
            LOGGER.warning("Gallery overlay no longer in the page; removing key listener")
            self._reset()
            return
        if not self.visible:
            return
        if _is_text_input(event.target):
            return

        handled = True
        if event.key in ("ArrowRight", " "):
            self.next()
        elif event.key == "ArrowLeft":
            self.prev()
        elif event.key == "Escape":
            self.close()
        elif event.key in ("s", "S"):
            if "download" in self._parts:
                self.request_download()
            else:
                LOGGER.warning("Download button missing")
        else:
            handled = False
        if handled:
            event.prevent_default()
            event.stop_propagation()

    # -- download ----------------------------------------------------------------

    async def download(self) -> Optional[Path]:
        """Save the currently displayed image and return where it went."""

        if self._overlay is None or "status" not in self._parts:
            LOGGER.error("Gallery controls are missing; cannot download")
            return None
        source = self.image_source
        previous = self.status_text
        if not source or source.startswith(("data:", "blob:")):
            LOGGER.warning("Nothing to download for %r", source)
            self._set_status(self.texts.gallery_download_warn)
            self._schedule_revert(self.texts.gallery_download_warn, previous, DOWNLOAD_WARN_REVERT)
            return None

        filename = build_download_filename(
            self.state.author_name, self.state.topic_title, self.state.current_index, source
        )
        self._set_status(self.texts.gallery_download_ok)
        try:
            content, _ = await self.client.download_image(source)
        except FetchFailedError as exc:
            LOGGER.error("Download of %s failed: %s", source, exc)
            self._set_status(self.texts.gallery_download_error)
            self._schedule_revert(
                self.texts.gallery_download_error,
                self._index_status(compact=True) or previous,
                DOWNLOAD_ERROR_REVERT,
            )
            return None
        try:
            path = await self.saver.save(content, filename)
        except DownloadFailedError as exc:
            LOGGER.error("%s", exc)
            self._set_status(self.texts.gallery_download_prep_error)
            self._schedule_revert(
                self.texts.gallery_download_prep_error,
                self._index_status(compact=True),
                DOWNLOAD_PREP_REVERT,
            )
            return None
        LOGGER.info("Saved %s", path)
        self._schedule_revert(self.texts.gallery_download_ok, previous, DOWNLOAD_OK_REVERT)
        return path

    def request_download(self) -> asyncio.Task:
        return self._spawn(self.download(), "gallery-download")

    async def settle(self) -> None:
        """Wait for every spawned open, display and download task."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = [
    "GalleryController",
    "GalleryPhase",
    "GalleryState",
    "OVERLAY_ID",
    "PART_CLASSES",
    "VISIBLE_CLASS",
]
