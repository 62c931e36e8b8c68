"""Asynchronous HTTP access to the discussion board."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from .config import SelectorSettings
from .extractor import extract_topic_images

LOGGER = logging.getLogger(__name__)


DEFAULT_BASE_URL = "https://community.openai.com"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


class FetchFailedError(RuntimeError):
    """Raised when a page or image cannot be retrieved."""

    def __init__(self, url: str, status_code: Optional[int] = None, reason: str = "") -> None:
        self.url = url
        self.status_code = status_code
        self.reason = reason
        detail = f"HTTP {status_code}" if status_code is not None else reason or "transport error"
        super().__init__(f"Fetching {url} failed ({detail})")


class ForumClient:
    """Fetches topic pages and images, relying on ambient session cookies only."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: Optional[str] = None,
        selectors: Optional[SelectorSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") or DEFAULT_BASE_URL
        self.selectors = selectors or SelectorSettings()
        headers = dict(DEFAULT_HEADERS)
        if user_agent:
            headers["User-Agent"] = user_agent
        self._client = client or httpx.AsyncClient(
            headers=headers, timeout=None, follow_redirects=True
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def absolute_url(self, url: str) -> str:
        return str(httpx.URL(self.base_url).join(url))

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        absolute = self.absolute_url(url)
        try:
            response = await self._client.get(absolute, **kwargs)
        except httpx.HTTPError as exc:
            raise FetchFailedError(absolute, reason=str(exc) or type(exc).__name__) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise FetchFailedError(absolute, status_code=response.status_code)
        return response

    async def fetch_page_html(self, url: str) -> str:
        response = await self._get(url)
        return response.text

    async def fetch_topic_images(self, topic_url: str) -> list[str]:
        """Fetch a topic page and return its opening post's content images."""

        response = await self._get(topic_url)
        return extract_topic_images(
            response.text,
            selectors=self.selectors,
            base_url=str(response.url),
        )

    async def download_image(self, url: str) -> tuple[bytes, Optional[str]]:
        """Retrieve an image and return its binary content and content type."""

        if not url:
            raise ValueError("Image URL must not be empty")
        response = await self._get(url, headers={"Accept": "image/*,*/*;q=0.8"})
        return response.content, response.headers.get("Content-Type")


class ImageLoader:
    """Decodes images for display, remembering the ones that loaded."""

    def __init__(self, client: ForumClient) -> None:
        self.client = client
        self._loaded: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    async def load(self, url: str) -> bool:
        if not url:
            return False
        if url in self._loaded:
            return True
        try:
            _, content_type = await self.client.download_image(url)
        except FetchFailedError as exc:
            LOGGER.warning("Image failed to load: %s", exc)
            return False
        if content_type and not content_type.lower().startswith("image/"):
            LOGGER.warning("Image %s served as %s", url, content_type)
            return False
        self._loaded.add(url)
        return True

    def preload(self, url: str) -> None:
        if not url or url in self._loaded:
            return
        task = asyncio.get_running_loop().create_task(self.load(url), name=f"preload:{url}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = [
    "DEFAULT_BASE_URL",
    "FetchFailedError",
    "ForumClient",
    "ImageLoader",
]
