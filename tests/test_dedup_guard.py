"""Tests for the execution lock and duplicate detection."""

import asyncio

import pytest

from deskpilot.core.models import ExecutionStatus, ReasonCode, ToolExecutionRecord
from deskpilot.exceptions import LockBusyError
from deskpilot.guard.dedup import DedupGuard, ExecutionLock, lock_key
from deskpilot.storage.executions import InMemoryExecutionRepository
from deskpilot.storage.shared import InMemorySharedStore


@pytest.fixture
def guard(store, executions):
    return DedupGuard(store, executions, lock_ttl_seconds=30)


class TestLockKey:
    def test_format(self):
        assert lock_key("c1", "refund", {"b": 1, "a": 2}) == 'tool-lock:c1:refund:{"a":2,"b":1}'

    def test_param_order_irrelevant(self):
        assert lock_key("c1", "t", {"x": 1, "y": 2}) == lock_key("c1", "t", {"y": 2, "x": 1})


class TestExecutionLock:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, guard, store):
        async with guard.lock("c1", "refund", {"orderId": "1"}) as lock:
            assert lock.held
            assert await store.get(lock.key) is not None
        assert not lock.held
        assert await store.get(lock.key) is None

    @pytest.mark.asyncio
    async def test_second_holder_busy(self, guard):
        async with guard.lock("c1", "refund", {"orderId": "1"}):
            with pytest.raises(LockBusyError):
                async with guard.lock("c1", "refund", {"orderId": "1"}):
                    pass

    @pytest.mark.asyncio
    async def test_different_params_independent(self, guard):
        async with guard.lock("c1", "refund", {"orderId": "1"}):
            async with guard.lock("c1", "refund", {"orderId": "2"}) as other:
                assert other.held

    @pytest.mark.asyncio
    async def test_released_on_exception(self, guard, store):
        with pytest.raises(RuntimeError):
            async with guard.lock("c1", "refund", {}) as lock:
                raise RuntimeError("boom")
        assert await store.get(lock.key) is None

    @pytest.mark.asyncio
    async def test_release_does_not_remove_foreign_token(self):
        store = InMemorySharedStore()
        lock = ExecutionLock(store, "k", ttl_seconds=30)
        await lock.acquire()
        # Lock expired and was taken over by someone else
        await store.set("k", "someone-else")
        await lock.release()
        assert await store.get("k") == "someone-else"

    @pytest.mark.asyncio
    async def test_concurrent_attempts_one_wins(self, guard):
        entered = []

        async def attempt(i):
            try:
                async with guard.lock("c1", "refund", {"orderId": "1"}):
                    entered.append(i)
                    await asyncio.sleep(0.01)
                return "ran"
            except LockBusyError:
                return "busy"

        results = await asyncio.gather(*(attempt(i) for i in range(5)))
        assert results.count("ran") == 1
        assert results.count("busy") == 4
        assert len(entered) == 1


class TestDuplicateDetection:
    @pytest.mark.asyncio
    async def test_successful_record_is_duplicate(self, guard, executions):
        await executions.append(ToolExecutionRecord(
            conversation_id="c1", tool_name="refund", params={"orderId": "1", "amount": 5},
            success=True, status=ExecutionStatus.EXECUTED, reason_code=ReasonCode.EXECUTED_SUCCESSFULLY,
        ))
        assert await guard.is_duplicate_execution("c1", "refund", {"amount": 5, "orderId": "1"})
        assert not await guard.is_duplicate_execution("c2", "refund", {"amount": 5, "orderId": "1"})
        assert not await guard.is_duplicate_execution("c1", "refund", {"orderId": "1"})

    @pytest.mark.asyncio
    async def test_failed_record_is_not_duplicate(self):
        executions = InMemoryExecutionRepository()
        guard = DedupGuard(InMemorySharedStore(), executions)
        await executions.append(ToolExecutionRecord(
            conversation_id="c1", tool_name="refund", params={}, success=False,
            status=ExecutionStatus.FAILED, reason_code=ReasonCode.TOOL_FAILED,
        ))
        assert not await guard.is_duplicate_execution("c1", "refund", {})
