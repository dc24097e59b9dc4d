"""Tests for medreminder.data.store — cached, per-key serialized storage."""

import asyncio
import json

import pytest

from medreminder.data.store import CoordinatedStore
from medreminder.ports.storage_port import StorageFailure


class SlowKeyValue:
    """KeyValuePort whose writes yield to the loop, to expose interleavings."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return self.data.get(key)

    async def set(self, key, value):
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.data[key] = value

    async def remove(self, key):
        await asyncio.sleep(0)
        self.data.pop(key, None)


class GatedFirstRead:
    """KeyValuePort whose first get blocks until the test opens the gate."""

    def __init__(self, data):
        self.data = data
        self.gate = asyncio.Event()
        self._first = True

    async def get(self, key):
        value = self.data.get(key)
        if self._first:
            self._first = False
            await self.gate.wait()
        return value

    async def set(self, key, value):
        self.data[key] = value

    async def remove(self, key):
        self.data.pop(key, None)


class TestGetSet:
    @pytest.mark.asyncio
    async def test_missing_returns_default(self, store):
        assert await store.get("k") is None
        assert await store.get("k", default=[]) == []

    @pytest.mark.asyncio
    async def test_read_your_writes(self, store):
        await store.set("k", {"a": 1})
        assert await store.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_cache_hit_skips_backend(self, store, kv):
        await store.set("k", [1, 2])
        reads = kv.reads
        await store.get("k")
        await store.get("k")
        assert kv.reads == reads

    @pytest.mark.asyncio
    async def test_returns_copies(self, store):
        await store.set("k", [1])
        value = await store.get("k")
        value.append(2)
        assert await store.get("k") == [1]

    @pytest.mark.asyncio
    async def test_failed_write_leaves_cache_untouched(self, store, kv):
        await store.set("k", "old")
        kv.fail_writes = True
        with pytest.raises(StorageFailure):
            await store.set("k", "new")
        assert await store.get("k") == "old"

    @pytest.mark.asyncio
    async def test_corrupt_value_raises_storage_failure(self, store, kv):
        kv.data["k"] = "{not json"
        with pytest.raises(StorageFailure, match="Corrupt"):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_unserializable_value_rejected(self, store):
        with pytest.raises(StorageFailure):
            await store.set("k", {1, 2})

    @pytest.mark.asyncio
    async def test_remove_and_invalidate(self, store, kv):
        await store.set("a", 1)
        await store.set("b", 2)
        await store.remove("a")
        assert await store.get("a") is None
        assert "a" not in kv.data

        kv.data["b"] = "3"
        assert await store.get("b") == 2
        store.invalidate("b")
        assert await store.get("b") == 3


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_returns_stored_value(self, store):
        result = await store.update("k", lambda rows: rows + [1], default=[])
        assert result == [1]
        assert await store.get("k") == [1]

    @pytest.mark.asyncio
    async def test_concurrent_updates_lose_nothing(self):
        store = CoordinatedStore(SlowKeyValue())

        async def add(item):
            await store.update("list", lambda rows: rows + [item], default=[])

        await asyncio.gather(*(add(i) for i in range(20)))
        assert sorted(await store.get("list")) == list(range(20))

    @pytest.mark.asyncio
    async def test_status_change_racing_creation(self):
        """A status flip and an append on the same collection both survive."""
        backend = SlowKeyValue()
        store = CoordinatedStore(backend)
        await store.set("reminders", [{"id": "a", "status": "pending"}])

        def mark_taken(rows):
            return [dict(r, status="taken") if r["id"] == "a" else r for r in rows]

        await asyncio.gather(
            store.update("reminders", mark_taken, default=[]),
            store.update("reminders", lambda rows: rows + [{"id": "b", "status": "pending"}], default=[]),
        )

        store.invalidate()
        rows = {r["id"]: r["status"] for r in await store.get("reminders")}
        assert rows == {"a": "taken", "b": "pending"}

    @pytest.mark.asyncio
    async def test_slow_read_racing_update_keeps_newer_value(self):
        backend = GatedFirstRead({"list": "[1]"})
        store = CoordinatedStore(backend)

        reader = asyncio.create_task(store.get("list"))
        for _ in range(3):
            await asyncio.sleep(0)
        writer = asyncio.create_task(
            store.update("list", lambda rows: rows + [2], default=[])
        )
        for _ in range(5):
            await asyncio.sleep(0)
        backend.gate.set()
        await asyncio.gather(reader, writer)

        assert await store.get("list") == [1, 2]
        await store.update("list", lambda rows: rows + [3], default=[])
        assert json.loads(backend.data["list"]) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_different_keys_are_independent(self, store, kv):
        await asyncio.gather(store.set("x", 1), store.set("y", 2))
        assert await store.get("x") == 1
        assert await store.get("y") == 2
