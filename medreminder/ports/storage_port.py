"""Storage port — abstract interface for the durable key-value primitive.

Values are opaque serialized strings. There are no transactions: each call
stands alone, and callers that need read-modify-write safety go through
CoordinatedStore.
"""

from __future__ import annotations

from typing import Protocol


class StorageFailure(Exception):
    """Raised when a durable read or write fails."""


class KeyValuePort(Protocol):
    """Durable get/set/remove of string values by key."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...
