"""Local file saving for gallery downloads."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlparse

from .extractor import IMAGE_EXTENSION_PATTERN


RESERVED_CHARACTERS = re.compile(r'[\\/:*?"<>|]')
MAX_FILENAME_LENGTH = 150


class DownloadFailedError(RuntimeError):
    """Raised when downloaded bytes cannot be written to disk."""

    def __init__(self, filename: str, reason: str) -> None:
        self.filename = filename
        self.reason = reason
        super().__init__(f"Saving {filename} failed: {reason}")


class FileSaver(Protocol):
    async def save(self, content: bytes, filename: str) -> Path:
        ...


def build_download_filename(
    author: Optional[str], title: Optional[str], index: int, url: str
) -> str:
    """Return ``"<author> - <title>-Img_<NN>.<ext>"`` made safe for file systems."""

    position = index + 1 if index >= 0 else 1
    number = f"{position:02d}"
    base = f"{author or 'U'} - {title or 'T'}-Img_{number}"
    base = RESERVED_CHARACTERS.sub("_", base)
    base = re.sub(r"\s+", " ", base).strip()[:MAX_FILENAME_LENGTH]
    base = re.sub(r"\.+$", "", base)
    base = re.sub(r"\.{2,}", ".", base)
    extension = ".jpg"
    match = IMAGE_EXTENSION_PATTERN.search(urlparse(url).path)
    if match:
        extension = f".{match.group(1).lower()}"
    return f"{base or f'Image_{number}'}{extension}"


class DirectorySaver:
    """Writes downloads into a directory, never overwriting existing files."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    async def save(self, content: bytes, filename: str) -> Path:
        return await asyncio.to_thread(self._write, content, filename)

    def _write(self, content: bytes, filename: str) -> Path:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            target = self._unique_path(filename)
            target.write_bytes(content)
        except OSError as exc:
            raise DownloadFailedError(filename, str(exc)) from exc
        return target

    def _unique_path(self, filename: str) -> Path:
        target = self.directory / filename
        stem, suffix = target.stem, target.suffix
        counter = 1
        while target.exists():
            target = self.directory / f"{stem} ({counter}){suffix}"
            counter += 1
        return target


__all__ = [
    "DirectorySaver",
    "DownloadFailedError",
    "FileSaver",
    "build_download_filename",
]
