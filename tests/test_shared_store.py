"""Tests for the shared key-value stores.

Covers:
- InMemorySharedStore semantics and lazy expiry
- RedisSharedStore command mapping (mocked redis client)
"""

from unittest.mock import AsyncMock

import pytest

from deskpilot.storage.shared import InMemorySharedStore, RedisSharedStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ─── In-memory ─────────────────────────────────────────────


class TestInMemorySharedStore:
    @pytest.mark.asyncio
    async def test_set_if_absent(self):
        store = InMemorySharedStore()
        assert await store.set_if_absent("k", "a", 60) is True
        assert await store.set_if_absent("k", "b", 60) is False
        assert await store.get("k") == "a"

    @pytest.mark.asyncio
    async def test_expiry(self):
        clock = FakeClock()
        store = InMemorySharedStore(clock=clock)
        await store.set_if_absent("k", "a", 10)
        clock.now += 10
        assert await store.get("k") is None
        assert await store.set_if_absent("k", "b", 10) is True

    @pytest.mark.asyncio
    async def test_set_without_ttl_persists(self):
        clock = FakeClock()
        store = InMemorySharedStore(clock=clock)
        await store.set("k", "v")
        clock.now += 10_000
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_get_and_delete(self):
        store = InMemorySharedStore()
        await store.set("k", "v", 60)
        assert await store.get_and_delete("k") == "v"
        assert await store.get_and_delete("k") is None

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemorySharedStore()
        await store.set("k", "v")
        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_delete_if_equals(self):
        store = InMemorySharedStore()
        await store.set("k", "token-a")
        assert await store.delete_if_equals("k", "token-b") is False
        assert await store.get("k") == "token-a"
        assert await store.delete_if_equals("k", "token-a") is True
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_len_counts_live_keys(self):
        clock = FakeClock()
        store = InMemorySharedStore(clock=clock)
        await store.set("a", "1", 5)
        await store.set("b", "2")
        clock.now += 6
        assert len(store) == 1


# ─── Redis ─────────────────────────────────────────────────


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value="v")
    client.delete = AsyncMock(return_value=1)
    client.getdel = AsyncMock(return_value="v")
    client.eval = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


class TestRedisSharedStore:
    @pytest.mark.asyncio
    async def test_set_if_absent_uses_nx_ex(self, redis_client):
        store = RedisSharedStore(redis_client)
        assert await store.set_if_absent("lock", "tok", 60) is True
        redis_client.set.assert_awaited_once_with("deskpilot:lock", "tok", nx=True, ex=60)

    @pytest.mark.asyncio
    async def test_set_if_absent_lost(self, redis_client):
        redis_client.set.return_value = None
        store = RedisSharedStore(redis_client)
        assert await store.set_if_absent("lock", "tok", 60) is False

    @pytest.mark.asyncio
    async def test_get_and_delete_uses_getdel(self, redis_client):
        store = RedisSharedStore(redis_client, key_prefix="t:")
        assert await store.get_and_delete("pending") == "v"
        redis_client.getdel.assert_awaited_once_with("t:pending")

    @pytest.mark.asyncio
    async def test_delete_if_equals_runs_script(self, redis_client):
        store = RedisSharedStore(redis_client)
        assert await store.delete_if_equals("lock", "tok") is True
        args = redis_client.eval.await_args.args
        assert args[1:] == (1, "deskpilot:lock", "tok")

    @pytest.mark.asyncio
    async def test_set_with_ttl(self, redis_client):
        store = RedisSharedStore(redis_client)
        await store.set("k", "v", 300)
        redis_client.set.assert_awaited_once_with("deskpilot:k", "v", ex=300)

    @pytest.mark.asyncio
    async def test_close(self, redis_client):
        await RedisSharedStore(redis_client).close()
        redis_client.aclose.assert_awaited_once()
