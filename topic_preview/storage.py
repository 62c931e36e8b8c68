"""Persistent key-value storage backing the thumbnail hint cache."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional


DEFAULT_STORE_PATH = Path("db") / "preview.db"


class StorageUnavailableError(RuntimeError):
    """Raised when the persistent store cannot be opened, read or written."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Storage at {path} unavailable: {reason}")


class KeyValueStore:
    """SQLite-backed asynchronous key-value store holding JSON values."""

    def __init__(self, path: Path | str = DEFAULT_STORE_PATH) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._initialise()
        except (OSError, sqlite3.Error) as exc:
            raise StorageUnavailableError(self.path, str(exc)) from exc
        self._lock = asyncio.Lock()
        self._closed = False

    def _initialise(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_items (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_ts REAL NOT NULL
                )
                """
            )

    async def close(self) -> None:
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            await asyncio.to_thread(self._conn.close)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            raw = await self._run(self._get_value, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise StorageUnavailableError(self.path, f"corrupt value for {key}") from exc

    def _get_value(self, key: str) -> Optional[str]:
        cursor = self._conn.execute("SELECT value FROM kv_items WHERE key = ?", (key,))
        row = cursor.fetchone()
        return str(row[0]) if row else None

    async def set(self, key: str, value: Any) -> None:
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StorageUnavailableError(self.path, f"unserialisable value for {key}") from exc
        async with self._lock:
            await self._run(self._set_value, key, payload, time.time())

    def _set_value(self, key: str, payload: str, now: float) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO kv_items (key, value, updated_ts) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                    updated_ts = excluded.updated_ts
                """,
                (key, payload, now),
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            await self._run(self._delete_value, key)

    def _delete_value(self, key: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM kv_items WHERE key = ?", (key,))

    async def _run(self, func: Any, *args: Any) -> Any:
        if self._closed:
            raise StorageUnavailableError(self.path, "store is closed")
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise StorageUnavailableError(self.path, str(exc)) from exc


__all__ = ["DEFAULT_STORE_PATH", "KeyValueStore", "StorageUnavailableError"]
