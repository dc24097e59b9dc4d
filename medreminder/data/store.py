"""
Medication Reminder — Coordinated Store.

Wraps the durable key-value primitive with an in-memory read cache and
per-key write serialization:

- A read after a completed write from this process sees the new value.
- Writes to the same key run one at a time; `update` holds the key's lock
  across its load-modify-store, so two writers editing the same collection
  cannot overwrite each other. Different keys proceed independently.
- The cache is only updated after the durable write succeeds, and a cache
  miss is filled under the key's lock, so a slow read can never overwrite
  a newer value cached by a concurrent write.

Values are JSON-compatible structures; callers always receive a copy.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import TYPE_CHECKING, Any, Callable

from medreminder.ports.storage_port import StorageFailure

if TYPE_CHECKING:
    from medreminder.ports.storage_port import KeyValuePort

logger = logging.getLogger(__name__)


class CoordinatedStore:
    """Cached, per-key serialized access to a KeyValuePort."""

    def __init__(self, backend: KeyValuePort) -> None:
        self._backend = backend
        self._cache: dict[str, Any] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under key, or default when absent."""
        if key in self._cache:
            return copy.deepcopy(self._cache[key])
        async with self._lock_for(key):
            return await self._load(key, default)

    async def _load(self, key: str, default: Any) -> Any:
        """Read through the cache. Caller holds the key's lock."""
        if key in self._cache:
            return copy.deepcopy(self._cache[key])

        raw = await self._backend.get(key)
        if raw is None:
            return copy.deepcopy(default)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageFailure(f"Corrupt value under {key!r}: {exc}") from exc

        self._cache[key] = value
        logger.debug("Cache filled for %r", key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        """Store value under key, waiting for any in-flight write to it."""
        async with self._lock_for(key):
            await self._write(key, value)

    async def update(
        self, key: str, mutate: Callable[[Any], Any], default: Any = None,
    ) -> Any:
        """Atomically load, transform and store the value under key.

        `mutate` receives a private copy of the current value (or default)
        and returns the new value. Returns what was stored.
        """
        async with self._lock_for(key):
            current = await self._load(key, default)
            new_value = mutate(current)
            await self._write(key, new_value)
            return copy.deepcopy(new_value)

    async def remove(self, key: str) -> None:
        """Delete the durable value and drop the cache entry."""
        async with self._lock_for(key):
            self._cache.pop(key, None)
            await self._backend.remove(key)
        logger.debug("Removed %r", key)

    def invalidate(self, key: str | None = None) -> None:
        """Forget cached values so the next read goes to durable storage."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    async def _write(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StorageFailure(f"Value under {key!r} is not serializable: {exc}") from exc

        await self._backend.set(key, raw)
        self._cache[key] = copy.deepcopy(value)
