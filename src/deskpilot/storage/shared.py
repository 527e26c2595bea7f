"""
Deskpilot Shared Key-Value Store

All cross-request state (dedup locks, pending intents) lives behind
this interface so the engine can run in several processes at once.
The only primitives required are atomic conditional writes with expiry
and an atomic read-and-delete.

Implementations:
- InMemorySharedStore: single process, used in tests and local runs
- RedisSharedStore: redis-py asyncio client (SET NX EX, GETDEL)
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from redis import asyncio as aioredis

from deskpilot.logging import get_logger

logger = get_logger("deskpilot.storage")


class SharedStore(ABC):
    """Atomic string key-value store with TTLs."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set key only if it does not exist. True if this call set it."""
        ...

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def get_and_delete(self, key: str) -> str | None:
        """Atomically read and remove a key."""
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only while it still holds ``value``."""
        ...

    async def close(self) -> None:
        return None


class InMemorySharedStore(SharedStore):
    """Process-local store. Expiry is evaluated lazily on access.

    Every method runs without awaiting, so each operation is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl_seconds))
        return True

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._data[key] = (value, self._expiry(ttl_seconds))

    async def delete(self, key: str) -> bool:
        present = self._live(key) is not None
        self._data.pop(key, None)
        return present

    async def get_and_delete(self, key: str) -> str | None:
        value = self._live(key)
        self._data.pop(key, None)
        return value

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self._live(key) != value:
            return False
        del self._data[key]
        return True

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)


# Compare-and-delete must run server-side to stay atomic
_DELETE_IF_EQUALS = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisSharedStore(SharedStore):
    """Redis-backed store shared by every engine process."""

    def __init__(self, client: aioredis.Redis, key_prefix: str = "deskpilot:"):
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "deskpilot:") -> RedisSharedStore:
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info("Using Redis shared store at %s", url)
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(self._key(key), value, nx=True, ex=ttl_seconds))

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._redis.set(self._key(key), value, ex=ttl_seconds)

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(self._key(key)))

    async def get_and_delete(self, key: str) -> str | None:
        return await self._redis.getdel(self._key(key))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._redis.eval(_DELETE_IF_EQUALS, 1, self._key(key), value))

    async def close(self) -> None:
        await self._redis.aclose()
