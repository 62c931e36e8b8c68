"""Configuration for the topic preview augmentation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import tomllib
from pydantic import BaseModel, ConfigDict, Field
from tomlkit import document, dumps, table


DEFAULT_CONFIG_PATH = Path("config.toml")


class SelectorSettings(BaseModel):
    """CSS selectors describing the host page's markup conventions."""

    topic_link: str = "a.raw-topic-link"
    topic_row: str = "tr"
    topic_cell: str = "td.main-link, td.topic-list-data.title, td:has(a.raw-topic-link)"
    topic_meta: str = ".topic-list-item-meta, .topic-creator"
    avatar_image: str = "img.avatar"
    preloaded_data: str = "#data-preloaded"
    main_outlet: str = "#main-outlet"
    gallery_image_link: str = "a.lightbox img"
    gallery_image_fallback: str = "img"
    first_post_cooked: str = ".post-stream .topic-post:first-child .cooked"
    model_config = ConfigDict(extra="ignore")


class PreviewOptions(BaseModel):
    base_url: str = "https://community.openai.com"
    listing_path: str = "/latest"
    user_agent: Optional[str] = None
    cache_ttl_hours: float = Field(default=48.0, gt=0.0)
    fetch_delay: float = Field(default=0.7, ge=0.0)
    queue_debounce: float = Field(default=0.1, ge=0.0)
    image_settle_delay: float = Field(default=0.017, ge=0.0)
    significant_change_threshold: int = Field(default=20, ge=1)
    thumbnail_size: int = Field(default=180, ge=16)
    observer_retry_delay: float = Field(default=1.0, ge=0.0)
    storage_path: str = "db/preview.db"
    download_dir: str = "downloads"
    model_config = ConfigDict(extra="ignore")

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 60 * 60


class UiTexts(BaseModel):
    gallery_title: str = "Open topic image gallery"
    gallery_loading: str = "Loading images..."
    gallery_loading_fetch: str = "Fetching data..."
    gallery_loading_hq: str = "Preparing images..."
    gallery_no_images: str = "No images found in the initial post."
    gallery_download_title: str = "Download current image (Shortcut: S)"
    gallery_download_ok: str = "Downloading..."
    gallery_download_error: str = "Download Error!"
    gallery_download_warn: str = "Nothing to download!"
    gallery_download_prep_error: str = "Prep Error!"
    gallery_image_alt: str = "Gallery Image"
    thumbnail_alt: str = "Topic Preview"
    placeholder_loading: str = "⏳"
    placeholder_error: str = "Error. Click to try opening."
    placeholder_no_images: str = "No image. Click to open."
    placeholder_no_id: str = "Preview unavailable (no ID)"
    symbol_loading: str = "⏳"
    symbol_error: str = "\u26a0\ufe0f"
    symbol_view: str = "\U0001f441\ufe0f"
    symbol_no_id: str = "\U0001f6ab"
    arrow_prev: str = "‹"
    arrow_next: str = "›"
    close_button: str = "×"
    download_button: str = "⬇"
    model_config = ConfigDict(extra="ignore")


class PreviewConfigModel(BaseModel):
    preview: PreviewOptions = PreviewOptions()
    selectors: SelectorSettings = SelectorSettings()
    texts: UiTexts = UiTexts()


@dataclass
class PreviewConfig:
    path: Path
    model: PreviewConfigModel

    @classmethod
    def load(cls, path: Path | str = DEFAULT_CONFIG_PATH) -> "PreviewConfig":
        path = Path(path)
        if path.exists():
            raw = tomllib.loads(path.read_text("utf-8"))
        else:
            raw = {}
        return cls(path=path, model=PreviewConfigModel(**raw))

    @property
    def options(self) -> PreviewOptions:
        return self.model.preview

    @property
    def selectors(self) -> SelectorSettings:
        return self.model.selectors

    @property
    def texts(self) -> UiTexts:
        return self.model.texts

    def save(self) -> None:
        doc = document()

        preview_table = table()
        options = self.model.preview
        for name, value in options.model_dump().items():
            if value is None:
                continue
            preview_table[name] = value
        doc["preview"] = preview_table

        # Only selectors and texts that differ from the defaults are written.
        selectors_table = table()
        for name, value in self.model.selectors.model_dump(exclude_defaults=True).items():
            selectors_table[name] = value
        if selectors_table:
            doc["selectors"] = selectors_table

        texts_table = table()
        for name, value in self.model.texts.model_dump(exclude_defaults=True).items():
            texts_table[name] = value
        if texts_table:
            doc["texts"] = texts_table

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(dumps(doc), encoding="utf-8")

    def update_options(self, **changes: Any) -> PreviewOptions:
        merged = {**self.model.preview.model_dump(), **changes}
        updated = PreviewOptions(**merged)
        self.model.preview = updated
        return updated


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "PreviewConfig",
    "PreviewConfigModel",
    "PreviewOptions",
    "SelectorSettings",
    "UiTexts",
]
