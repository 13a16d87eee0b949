"""
Tests for the key-value stores.

Tests persistence, atomic writes, file permissions and copy semantics.
"""

import json
import stat

import pytest

from dns_filter_manager.kv_store import InMemoryKeyValueStore, JsonFileKeyValueStore


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_get_set_remove(self):
        store = InMemoryKeyValueStore()

        assert await store.get("servers") is None
        assert await store.get("servers", []) == []

        await store.set("servers", [{"id": "a"}])
        assert await store.get("servers") == [{"id": "a"}]
        assert await store.keys() == ["servers"]

        await store.remove("servers")
        assert await store.get("servers") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = InMemoryKeyValueStore()
        value = {"rules": ["a1"]}

        await store.set("cache", value)
        value["rules"].append("b1")
        fetched = await store.get("cache")
        fetched["rules"].append("c1")

        assert await store.get("cache") == {"rules": ["a1"]}


class TestJsonFileStore:

    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "state" / "storage.json"

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, path):
        store = JsonFileKeyValueStore(path)
        await store.set("settings", {"autoSync": False})
        await store.set("servers", [])

        reopened = JsonFileKeyValueStore(path)
        assert await reopened.get("settings") == {"autoSync": False}
        assert sorted(await reopened.keys()) == ["servers", "settings"]

    @pytest.mark.asyncio
    async def test_file_permissions(self, path):
        store = JsonFileKeyValueStore(path)
        await store.set("_deviceSecret", "c2VjcmV0")

        mode = stat.S_IMODE(path.stat().st_mode)
        assert mode == 0o600
        assert not path.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_remove(self, path):
        store = JsonFileKeyValueStore(path)
        await store.set("cache", {"a": 1})
        await store.remove("cache")
        await store.remove("missing")

        assert json.loads(path.read_text()) == {}

    @pytest.mark.asyncio
    async def test_missing_and_empty_file(self, path):
        store = JsonFileKeyValueStore(path)
        assert await store.get("servers") is None

        path.write_text("")
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, path):
        store = JsonFileKeyValueStore(path)
        path.write_text("{not json")

        with pytest.raises(json.JSONDecodeError):
            await store.get("servers")

    @pytest.mark.asyncio
    async def test_non_object_file_raises(self, path):
        store = JsonFileKeyValueStore(path)
        path.write_text("[1, 2]")

        with pytest.raises(ValueError):
            await store.get("servers")
