"""
Medication Reminder — Durable Key-Value Store.

A single SQLite table of (key, value) rows. Implements KeyValuePort; the
sync sqlite3 calls are wrapped with asyncio.to_thread for async callers.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path

from medreminder.ports.storage_port import StorageFailure

logger = logging.getLogger(__name__)


class SQLiteKeyValueStore:
    """SQLite-backed implementation of KeyValuePort."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from medreminder.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        # An in-memory database only lives as long as its connection
        self._shared: sqlite3.Connection | None = None
        if db_path == ":memory:":
            self._shared = sqlite3.connect(db_path, check_same_thread=False)
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        return sqlite3.connect(self._db_path)

    def _init_db(self) -> None:
        """Create the kv table if it doesn't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
        logger.debug("Key-value table initialized at %s", self._db_path)

    # -- sync primitives ----------------------------------------------------

    def _get_sync(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row is not None else None

    def _set_sync(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def _remove_sync(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    # -- KeyValuePort -------------------------------------------------------

    async def get(self, key: str) -> str | None:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to read {key!r}: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to write {key!r}: {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove_sync, key)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to remove {key!r}: {exc}") from exc
