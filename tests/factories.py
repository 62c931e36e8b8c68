"""Markup builders and a fake forum shared by the test modules."""

from __future__ import annotations

import html
import json
from pathlib import Path
from typing import Optional

import httpx

from topic_preview.config import PreviewConfig, PreviewConfigModel, PreviewOptions
from topic_preview.forum import ForumClient

BASE_URL = "https://forum.example"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def make_config(tmp_path=None, **options) -> PreviewConfig:
    defaults = {
        "base_url": BASE_URL,
        "fetch_delay": 0.0,
        "queue_debounce": 0.0,
        "image_settle_delay": 0.0,
        "observer_retry_delay": 0.01,
    }
    if tmp_path is not None:
        defaults["storage_path"] = str(tmp_path / "preview.db")
        defaults["download_dir"] = str(tmp_path / "downloads")
    defaults.update(options)
    path = (tmp_path / "config.toml") if tmp_path is not None else Path("config.toml")
    model = PreviewConfigModel(preview=PreviewOptions(**defaults))
    return PreviewConfig(path=path, model=model)


def topic_row(topic_id: int, *, title: Optional[str] = None, author: str = "alice") -> str:
    return (
        '<tr class="topic-list-item">'
        '<td class="main-link">'
        f'<a class="title raw-topic-link" href="/t/topic-{topic_id}/{topic_id}">'
        f"{title or f'Topic {topic_id}'}</a>"
        "</td>"
        '<td class="posters">'
        f'<a href="/u/{author}"><img class="avatar" title="{author} - Original Poster"'
        f' src="/user_avatar/forum/{author}/48/1_2.png"></a>'
        "</td>"
        "</tr>"
    )


def preloaded_attr(data: dict) -> str:
    return html.escape(json.dumps(data), quote=True)


def listing_html(rows: list[str], *, image_hints: Optional[dict[int, str]] = None) -> str:
    preloaded = ""
    if image_hints is not None:
        topics = [{"id": topic_id, "image_url": url} for topic_id, url in image_hints.items()]
        payload = {"topic_list": json.dumps({"topic_list": {"topics": topics}})}
        preloaded = f'<div id="data-preloaded" data-preloaded="{preloaded_attr(payload)}"></div>'
    return (
        "<html><head></head><body>"
        '<div id="main-outlet"><table class="topic-list"><tbody>'
        f"{''.join(rows)}"
        "</tbody></table></div>"
        f"{preloaded}"
        "</body></html>"
    )


def lightbox(url: str) -> str:
    preview = url.replace("/original/", "/optimized/").replace(".png", "_2_690x388.png")
    return f'<div class="lightbox-wrapper"><a class="lightbox" href="{url}"><img src="{preview}"></a></div>'


def upload(name: str) -> str:
    return f"{BASE_URL}/uploads/default/original/1X/{name}.png"


def topic_page(cooked: str, *, topic_id: int = 1, preloaded: bool = True) -> str:
    if preloaded:
        topic = {"post_stream": {"posts": [{"id": 10, "cooked": cooked}]}}
        payload = {f"topic_{topic_id}": json.dumps(topic)}
        return (
            "<html><body>"
            f'<div id="data-preloaded" data-preloaded="{preloaded_attr(payload)}"></div>'
            "</body></html>"
        )
    return (
        "<html><body>"
        '<div class="post-stream">'
        f'<article class="topic-post"><div class="cooked">{cooked}</div></article>'
        '<article class="topic-post"><div class="cooked"><img src="/uploads/reply.png"></div></article>'
        "</div></body></html>"
    )


class FakeForum:
    """Serves registered pages and images through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.pages: dict[str, str] = {}
        self.images: set[str] = set()
        self.failing: set[str] = set()
        self.requests: list[str] = []

    def add_topic(self, topic_id: int, images: list[str], *, preloaded: bool = True) -> None:
        cooked = "".join(lightbox(url) for url in images) or "<p>No pictures here.</p>"
        self.pages[f"/t/topic-{topic_id}/{topic_id}"] = topic_page(
            cooked, topic_id=topic_id, preloaded=preloaded
        )
        for url in images:
            self.images.add(httpx.URL(url).path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if path in self.failing:
            return httpx.Response(500, text="boom")
        if path in self.pages:
            return httpx.Response(
                200, text=self.pages[path], headers={"Content-Type": "text/html; charset=utf-8"}
            )
        if path in self.images:
            return httpx.Response(200, content=PNG_BYTES, headers={"Content-Type": "image/png"})
        return httpx.Response(404, text="not found")

    def topic_requests(self) -> list[str]:
        return [path for path in self.requests if path.startswith("/t/")]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=BASE_URL)

    def client(self, config: Optional[PreviewConfig] = None) -> ForumClient:
        selectors = config.selectors if config is not None else None
        return ForumClient(base_url=BASE_URL, selectors=selectors, client=self.http_client())


class GatedLoader:
    """Image loader whose results and timing are controlled by the test."""

    def __init__(self) -> None:
        self.gates: dict = {}
        self.failures: set[str] = set()
        self.loaded: list[str] = []
        self.preloaded: list[str] = []

    async def load(self, url: str) -> bool:
        gate = self.gates.get(url)
        if gate is not None:
            await gate.wait()
        self.loaded.append(url)
        return url not in self.failures

    def preload(self, url: str) -> None:
        self.preloaded.append(url)

    async def aclose(self) -> None:
        pass
