"""Parsing helpers that turn topic markup into ordered content image URLs."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import Tag

from .config import SelectorSettings

LOGGER = logging.getLogger(__name__)


TOPIC_ID_PATTERN = re.compile(r"/t/(?:[^/]+/)?(\d+)(?:[/?#]|$)")
SIZE_SUFFIX_PATTERN = re.compile(
    r"(?:_(?:\d+|[a-z])(?:_\d+x\d+)?|_\d+x\d+)\.(?P<ext>jpe?g|png|gif|webp|bmp)$",
    re.IGNORECASE,
)
RESIZED_SEGMENTS = ("/optimized/", "/thumbnail/")
IMAGE_EXTENSION_PATTERN = re.compile(r"\.(jpe?g|png|gif|webp|bmp)$", re.IGNORECASE)
AVATAR_PATTERNS = (re.compile(r"/user_avatar/"), re.compile(r"/avatar/"))
TRANSPARENT_PLACEHOLDER = "/images/transparent.png"
EMOJI_SEGMENT = "/emoji/"


def topic_id_from_url(url: Optional[str]) -> Optional[str]:
    """Return the ``t<digits>`` key for a topic URL, or ``None``."""

    if not url:
        return None
    match = TOPIC_ID_PATTERN.search(url)
    if not match:
        return None
    return f"t{match.group(1)}"


def is_content_image(url: Optional[str]) -> bool:
    if not url:
        return False
    if url.startswith("data:") or url.startswith("blob:"):
        return False
    if EMOJI_SEGMENT in url or TRANSPARENT_PLACEHOLDER in url:
        return False
    return not any(pattern.search(url) for pattern in AVATAR_PATTERNS)


def filter_content_images(urls: Sequence[Optional[str]]) -> list[str]:
    return [url for url in urls if url and is_content_image(url)]


def original_image_url(url: Optional[str]) -> Optional[str]:
    """Rewrite a preview image URL into its full resolution form.

    ``.../optimized/1X/abc_2_100x100.png?v=2`` becomes
    ``.../original/1X/abc.png``. Only URLs below an ``optimized`` or
    ``thumbnail`` segment that carry a size suffix are rewritten; everything
    else is returned unchanged, so applying the rewrite twice is a no-op.
    """

    if not url or not isinstance(url, str):
        return url
    base, sep, query = url.partition("?")
    if not any(segment in base for segment in RESIZED_SEGMENTS):
        return url
    if not SIZE_SUFFIX_PATTERN.search(base):
        return url
    rewritten = SIZE_SUFFIX_PATTERN.sub(r".\g<ext>", base)
    for segment in RESIZED_SEGMENTS:
        rewritten = rewritten.replace(segment, "/original/", 1)
    if sep and not IMAGE_EXTENSION_PATTERN.search(rewritten):
        return f"{rewritten}{sep}{query}"
    return rewritten


@dataclass(frozen=True, slots=True)
class Found:
    urls: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class NotFound:
    reason: str = ""


StrategyResult = Union[Found, NotFound]


def _resolve_image_source(img: Tag, base_url: Optional[str]) -> str:
    anchor = img.find_parent("a", class_="lightbox")
    source = ""
    if anchor is not None:
        source = (anchor.get("href") or "").strip()
    if not source:
        source = (img.get("src") or img.get("data-src") or "").strip()
    if source and base_url and not source.startswith(("data:", "blob:")):
        source = urljoin(base_url, source)
    return source


def images_from_cooked(
    cooked_html: Optional[str],
    *,
    selectors: Optional[SelectorSettings] = None,
    base_url: Optional[str] = None,
) -> list[str]:
    """Extract content image URLs from a rendered post body."""

    if not cooked_html or not isinstance(cooked_html, str):
        return []
    selectors = selectors or SelectorSettings()
    soup = BeautifulSoup(cooked_html, "html.parser")
    elements = soup.select(selectors.gallery_image_link)
    if not elements:
        elements = soup.select(selectors.gallery_image_fallback)
    return filter_content_images(
        [_resolve_image_source(img, base_url) for img in elements]
    )


def _decode_preloaded(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    data = json.loads(raw)
    return data if isinstance(data, dict) else None


def _first_post_cooked(data: dict[str, Any]) -> Optional[str]:
    topic_key = next((key for key in data if key.startswith("topic_")), None)
    posts: Any = None
    if topic_key and isinstance(data[topic_key], str):
        topic = json.loads(data[topic_key])
        if isinstance(topic, dict):
            posts = (topic.get("post_stream") or {}).get("posts")
    elif isinstance(data.get("post_stream"), dict):
        posts = data["post_stream"].get("posts")
    if not posts or not isinstance(posts, list) or not isinstance(posts[0], dict):
        return None
    cooked = posts[0].get("cooked")
    return cooked if isinstance(cooked, str) else None


def from_preloaded_data(
    soup: BeautifulSoup, selectors: SelectorSettings, base_url: Optional[str]
) -> StrategyResult:
    element = soup.select_one(selectors.preloaded_data)
    if element is None:
        return NotFound("no preloaded data")
    try:
        data = _decode_preloaded(element.get("data-preloaded"))
        cooked = _first_post_cooked(data) if data else None
    except (ValueError, TypeError, AttributeError) as exc:
        LOGGER.warning("Malformed preloaded topic data: %s", exc)
        return NotFound("malformed preloaded data")
    if not cooked:
        return NotFound("no cooked first post")
    urls = images_from_cooked(cooked, selectors=selectors, base_url=base_url)
    if not urls:
        return NotFound("no images in preloaded post")
    return Found(urls)


def from_rendered_post(
    soup: BeautifulSoup, selectors: SelectorSettings, base_url: Optional[str]
) -> StrategyResult:
    cooked = soup.select_one(selectors.first_post_cooked)
    if cooked is None:
        return NotFound("no rendered first post")
    urls = images_from_cooked(cooked.decode_contents(), selectors=selectors, base_url=base_url)
    if not urls:
        return NotFound("no images in rendered post")
    return Found(urls)


Strategy = Callable[[BeautifulSoup, SelectorSettings, Optional[str]], StrategyResult]
EXTRACTION_STRATEGIES: tuple[Strategy, ...] = (from_preloaded_data, from_rendered_post)


def extract_topic_images(
    html: Optional[str],
    *,
    selectors: Optional[SelectorSettings] = None,
    base_url: Optional[str] = None,
) -> list[str]:
    """Return the opening post's content images in document order.

    Strategies are tried in priority order and the first ``Found`` wins. An
    empty list means the topic was inspected and has no content images.
    """

    if not html:
        return []
    selectors = selectors or SelectorSettings()
    soup = BeautifulSoup(html, "html.parser")
    for strategy in EXTRACTION_STRATEGIES:
        result = strategy(soup, selectors, base_url)
        if isinstance(result, Found):
            return list(result.urls)
        LOGGER.debug("%s: %s", strategy.__name__, result.reason)
    return []


def initial_image_map(
    soup: BeautifulSoup, selectors: Optional[SelectorSettings] = None
) -> dict[str, str]:
    """Read the listing page's embedded ``topic_id -> image_url`` hints."""

    selectors = selectors or SelectorSettings()
    element = soup.select_one(selectors.preloaded_data)
    if element is None or not element.get("data-preloaded"):
        return {}
    try:
        data = json.loads(element["data-preloaded"])
        source: Any
        topic_list = data.get("topic_list") if isinstance(data, dict) else None
        if isinstance(topic_list, str):
            source = json.loads(topic_list)
        elif isinstance(topic_list, dict) and "topic_list" in topic_list:
            source = topic_list
        elif topic_list is not None:
            source = data
        elif isinstance(data, dict) and "topics" in data:
            source = {"topic_list": data}
        else:
            return {}
        topics = (source.get("topic_list") or {}).get("topics")
    except (ValueError, TypeError, AttributeError) as exc:
        LOGGER.warning("Could not parse preloaded topic list: %s", exc)
        return {}
    if not isinstance(topics, list):
        LOGGER.warning("Preloaded topic list has no topics array")
        return {}
    hints: dict[str, str] = {}
    for topic in topics:
        if not isinstance(topic, dict):
            continue
        topic_id = topic.get("id")
        image_url = topic.get("image_url")
        if topic_id and image_url:
            hints[f"t{topic_id}"] = str(image_url)
    return hints


__all__ = [
    "EXTRACTION_STRATEGIES",
    "Found",
    "NotFound",
    "extract_topic_images",
    "filter_content_images",
    "from_preloaded_data",
    "from_rendered_post",
    "images_from_cooked",
    "initial_image_map",
    "is_content_image",
    "original_image_url",
    "topic_id_from_url",
]
