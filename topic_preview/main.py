"""FastAPI application driving the topic preview augmentation."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from .app import PreviewManager, PreviewStatus
from .config import PreviewConfig
from .forum import FetchFailedError
from .gallery import GalleryController
from .queue import QueueItem


class QueueItemResponse(BaseModel):
    topic_id: str
    topic_url: str
    enqueued_at: datetime


class GalleryResponse(BaseModel):
    phase: str
    visible: bool
    topic_id: Optional[str]
    topic_url: Optional[str]
    topic_title: Optional[str]
    author_name: Optional[str]
    images: list[str]
    current_index: int
    status_text: str
    image_source: str


class StatusResponse(BaseModel):
    started: bool
    url: str
    persistent_cache: bool
    observed_root: Optional[str]
    significant_changes: int
    cached_topics: int
    queue_size: int
    queue: list[QueueItemResponse]
    queue_current: Optional[str]
    queue_processed: int
    listeners: int
    gallery: GalleryResponse


class NavigateRequest(BaseModel):
    url: Optional[str] = Field(default=None, description="Listing URL or path")
    replace_outlet: bool = Field(
        default=False, description="Swap the main content element instead of its children"
    )


class KeyRequest(BaseModel):
    key: str = Field(..., min_length=1)


class KeyResponse(BaseModel):
    handled: bool
    gallery: GalleryResponse


def create_app(
    config: Optional[PreviewConfig] = None,
    manager: Optional[PreviewManager] = None,
) -> FastAPI:
    config = config or PreviewConfig.load()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        current = manager or await PreviewManager.from_url(config)
        app.state.manager = current
        await current.start()
        try:
            yield
        finally:
            await current.close()
            app.state.manager = None

    app = FastAPI(lifespan=lifespan, title="Topic Preview API")
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_manager(request: Request) -> PreviewManager:
        current = getattr(request.app.state, "manager", None)
        if current is None:
            raise HTTPException(status_code=503, detail="Preview manager not ready")
        return current

    @app.get("/api/status", response_model=StatusResponse)
    async def get_status(current: PreviewManager = Depends(get_manager)) -> StatusResponse:
        return _status_to_response(current.status())

    @app.get("/api/page", response_class=HTMLResponse)
    async def get_page(current: PreviewManager = Depends(get_manager)) -> str:
        return current.render()

    @app.post("/api/navigate", response_model=StatusResponse)
    async def navigate(
        payload: NavigateRequest,
        current: PreviewManager = Depends(get_manager),
    ) -> StatusResponse:
        try:
            await current.navigate(payload.url, replace_outlet=payload.replace_outlet)
        except FetchFailedError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        await current.settle()
        return _status_to_response(current.status())

    @app.post("/api/topics/{topic_id}/click", response_model=GalleryResponse)
    async def click_topic(
        topic_id: str, current: PreviewManager = Depends(get_manager)
    ) -> GalleryResponse:
        if not current.click_topic(topic_id):
            raise HTTPException(status_code=404, detail="No clickable preview for topic")
        await current.settle()
        return _gallery_to_response(current.gallery)

    @app.get("/api/gallery", response_model=GalleryResponse)
    async def get_gallery(current: PreviewManager = Depends(get_manager)) -> GalleryResponse:
        return _gallery_to_response(current.gallery)

    @app.post("/api/gallery/key", response_model=KeyResponse)
    async def press_key(
        payload: KeyRequest, current: PreviewManager = Depends(get_manager)
    ) -> KeyResponse:
        event = current.press_key(payload.key)
        await current.settle()
        return KeyResponse(
            handled=event.default_prevented,
            gallery=_gallery_to_response(current.gallery),
        )

    @app.post("/api/gallery/close", response_model=GalleryResponse)
    async def close_gallery(current: PreviewManager = Depends(get_manager)) -> GalleryResponse:
        current.gallery.close()
        return _gallery_to_response(current.gallery)

    return app


def _queue_item_to_response(item: QueueItem) -> QueueItemResponse:
    return QueueItemResponse(
        topic_id=item.topic_id,
        topic_url=item.topic_url,
        enqueued_at=datetime.fromtimestamp(item.enqueued_at, tz=timezone.utc),
    )


def _gallery_to_response(gallery: GalleryController) -> GalleryResponse:
    state = gallery.state
    return GalleryResponse(
        phase=state.phase.value,
        visible=gallery.visible,
        topic_id=state.topic_id,
        topic_url=state.topic_url,
        topic_title=state.topic_title,
        author_name=state.author_name,
        images=list(state.images),
        current_index=state.current_index,
        status_text=gallery.status_text,
        image_source=gallery.image_source,
    )


def _status_to_response(status: PreviewStatus) -> StatusResponse:
    gallery = status.gallery
    return StatusResponse(
        started=status.started,
        url=status.url,
        persistent_cache=status.persistent_cache,
        observed_root=status.observed_root,
        significant_changes=status.significant_changes,
        cached_topics=status.cached_topics,
        queue_size=status.queue_size,
        queue=[_queue_item_to_response(item) for item in status.queue],
        queue_current=status.queue_current,
        queue_processed=status.queue_processed,
        listeners=status.listeners,
        gallery=GalleryResponse(
            phase=gallery.phase.value,
            visible=status.gallery_visible,
            topic_id=gallery.topic_id,
            topic_url=gallery.topic_url,
            topic_title=gallery.topic_title,
            author_name=gallery.author_name,
            images=list(gallery.images),
            current_index=gallery.current_index,
            status_text=status.gallery_status,
            image_source=status.gallery_image,
        ),
    )


app = create_app()


async def main() -> None:
    import uvicorn

    config = uvicorn.Config(app, host="0.0.0.0", port=8000, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
