"""Tests for medreminder.data.kv_store — SQLite-backed KeyValuePort."""

import sqlite3

import pytest

from medreminder.data.kv_store import SQLiteKeyValueStore
from medreminder.ports.storage_port import StorageFailure


class TestSQLiteKeyValueStore:
    @pytest.mark.asyncio
    async def test_missing_key_is_none(self, tmp_db_path):
        kv = SQLiteKeyValueStore(db_path=tmp_db_path)
        assert await kv.get("nope") is None

    @pytest.mark.asyncio
    async def test_set_get_overwrite(self, tmp_db_path):
        kv = SQLiteKeyValueStore(db_path=tmp_db_path)
        await kv.set("k", "one")
        await kv.set("k", "two")
        assert await kv.get("k") == "two"

    @pytest.mark.asyncio
    async def test_remove(self, tmp_db_path):
        kv = SQLiteKeyValueStore(db_path=tmp_db_path)
        await kv.set("k", "v")
        await kv.remove("k")
        await kv.remove("k")
        assert await kv.get("k") is None

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_db_path):
        await SQLiteKeyValueStore(db_path=tmp_db_path).set("k", "v")
        assert await SQLiteKeyValueStore(db_path=tmp_db_path).get("k") == "v"

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        kv = SQLiteKeyValueStore(db_path=":memory:")
        await kv.set("k", "v")
        assert await kv.get("k") == "v"

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "r.db"
        SQLiteKeyValueStore(db_path=str(path))
        assert path.exists()

    @pytest.mark.asyncio
    async def test_sqlite_error_becomes_storage_failure(self, tmp_db_path):
        kv = SQLiteKeyValueStore(db_path=tmp_db_path)
        with sqlite3.connect(tmp_db_path) as conn:
            conn.execute("DROP TABLE kv")
        with pytest.raises(StorageFailure):
            await kv.get("k")
        with pytest.raises(StorageFailure):
            await kv.set("k", "v")
