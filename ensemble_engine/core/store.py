"""
Durable key/value stores with TTL.

The engine depends only on the abstract ``DurableStore`` contract
(put/get/delete with TTL). Two implementations ship with the package:
an in-process store for tests and single-process hosts, and a Redis store.
"""
import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis

from ensemble_engine.core.config import Settings, get_settings


class DurableStore(ABC):
    """Abstract put/get/delete-with-TTL store."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a JSON-serializable value, optionally expiring after ``ttl_seconds``."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None when missing or expired."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""


@dataclass
class StoreEntry:
    """Stored value with expiry bookkeeping."""
    value: Any
    created_at: float
    ttl_seconds: int | None

    def is_expired(self, now: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return now - self.created_at >= self.ttl_seconds


class InMemoryStore(DurableStore):
    """
    In-process store.

    Values are round-tripped through JSON so callers observe the same
    copy semantics as with a remote store.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, StoreEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            self._entries[key] = StoreEntry(
                value=json.dumps(value, default=str),
                created_at=self._clock(),
                ttl_seconds=ttl_seconds,
            )

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return json.loads(entry.value)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def keys(self) -> list[str]:
        """List live keys."""
        async with self._lock:
            now = self._clock()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]


class RedisStore(DurableStore):
    """Redis-backed store using ``SET ... EX`` for TTLs."""

    def __init__(self, client: aioredis.Redis, prefix: str = "ensemble:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RedisStore":
        settings = settings or get_settings()
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        return cls(client, prefix=settings.store_key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl_seconds:
            await self.client.set(self._key(key), payload, ex=ttl_seconds)
        else:
            await self.client.set(self._key(key), payload)

    async def get(self, key: str) -> Any | None:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def delete(self, key: str) -> bool:
        deleted = await self.client.delete(self._key(key))
        return bool(deleted)

    async def close(self) -> None:
        await self.client.aclose()
