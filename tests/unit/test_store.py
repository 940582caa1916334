"""
Tests for durable stores.

Uses a mock Redis client for the Redis store.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ensemble_engine.core.config import Settings
from ensemble_engine.core.store import InMemoryStore, RedisStore, StoreEntry


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestStoreEntry:
    """Tests for expiry bookkeeping."""

    def test_no_ttl_never_expires(self):
        assert not StoreEntry("v", created_at=0, ttl_seconds=None).is_expired(10**9)

    def test_expires_after_ttl(self):
        entry = StoreEntry("v", created_at=100, ttl_seconds=10)
        assert not entry.is_expired(109)
        assert entry.is_expired(110)


class TestInMemoryStore:
    """Tests for the in-process store."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self):
        store = InMemoryStore()
        await store.put("k", {"a": [1, 2]})
        assert await store.get("k") == {"a": [1, 2]}
        assert await store.delete("k") is True
        assert await store.get("k") is None
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_values_are_copies(self):
        store = InMemoryStore()
        value = {"items": [1]}
        await store.put("k", value)
        value["items"].append(2)
        loaded = await store.get("k")
        loaded["items"].append(3)
        assert await store.get("k") == {"items": [1]}

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock()
        store = InMemoryStore(clock=clock)
        await store.put("k", "v", ttl_seconds=5)
        clock.now += 4
        assert await store.get("k") == "v"
        assert await store.keys() == ["k"]
        clock.now += 1
        assert await store.get("k") is None
        assert await store.keys() == []


class TestRedisStore:
    """Tests for the Redis store with a mocked client."""

    def _client(self) -> MagicMock:
        client = MagicMock()
        client.set = AsyncMock()
        client.get = AsyncMock()
        client.delete = AsyncMock()
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_put_with_ttl(self):
        client = self._client()
        store = RedisStore(client, prefix="test:")
        await store.put("k", {"a": 1}, ttl_seconds=30)
        client.set.assert_awaited_once_with("test:k", json.dumps({"a": 1}), ex=30)

    @pytest.mark.asyncio
    async def test_put_without_ttl(self):
        client = self._client()
        store = RedisStore(client, prefix="test:")
        await store.put("k", 1)
        client.set.assert_awaited_once_with("test:k", "1")

    @pytest.mark.asyncio
    async def test_get_decodes_json(self):
        client = self._client()
        client.get.return_value = b'{"a": 1}'
        store = RedisStore(client, prefix="test:")
        assert await store.get("k") == {"a": 1}
        client.get.assert_awaited_once_with("test:k")

    @pytest.mark.asyncio
    async def test_get_missing(self):
        client = self._client()
        client.get.return_value = None
        assert await RedisStore(client).get("k") is None

    @pytest.mark.asyncio
    async def test_delete_and_close(self):
        client = self._client()
        client.delete.return_value = 1
        store = RedisStore(client)
        assert await store.delete("k") is True
        client.delete.return_value = 0
        assert await store.delete("k") is False
        await store.close()
        client.aclose.assert_awaited_once()

    def test_from_settings(self):
        store = RedisStore.from_settings(Settings(redis_url="redis://example:6379/1", store_key_prefix="x:"))
        assert store.prefix == "x:"
