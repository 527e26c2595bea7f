"""
Deskpilot Duplicate/Concurrency Guard

Two protections around every tool execution:

1. ExecutionLock: advisory mutual exclusion per
   (conversation, tool, canonical params). Acquisition is a single
   SET-if-absent with TTL; a caller that loses the race gets
   LockBusyError immediately and must not queue. Release happens in
   ``__aexit__`` on every exit path and only removes the key while it
   still carries this holder's token, so an expired-and-reacquired lock
   is never released by the previous holder.

2. Duplicate detection: asks the execution history whether the same
   call already succeeded in this conversation.
"""

from __future__ import annotations

import uuid
from typing import Any

from deskpilot.exceptions import LockBusyError
from deskpilot.intent.hasher import canonical_params
from deskpilot.logging import get_logger
from deskpilot.storage.executions import ExecutionRepository
from deskpilot.storage.shared import SharedStore

logger = get_logger("deskpilot.guard")

DEFAULT_LOCK_TTL_SECONDS = 60


def lock_key(conversation_id: str, tool_name: str, params: dict[str, Any] | None) -> str:
    return f"tool-lock:{conversation_id}:{tool_name}:{canonical_params(params)}"


class ExecutionLock:
    """Scoped lock over a shared-store key.

    Usage:
        async with guard.lock(conversation_id, tool, params):
            ...  # at most one holder per key
    """

    def __init__(self, store: SharedStore, key: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self._store = store
        self._key = key
        self._ttl = ttl_seconds
        self._token = uuid.uuid4().hex
        self._held = False

    @property
    def key(self) -> str:
        return self._key

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        if not await self._store.set_if_absent(self._key, self._token, self._ttl):
            logger.info("Lock busy", extra={"lock_key": self._key})
            raise LockBusyError(self._key)
        self._held = True
        logger.debug("Lock acquired", extra={"lock_key": self._key})

    async def release(self) -> None:
        if not self._held:
            return
        self._held = False
        released = await self._store.delete_if_equals(self._key, self._token)
        if not released:
            logger.warning("Lock expired before release", extra={"lock_key": self._key})

    async def __aenter__(self) -> ExecutionLock:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class DedupGuard:
    """Lock factory plus duplicate lookup."""

    def __init__(
        self,
        store: SharedStore,
        executions: ExecutionRepository,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ):
        self._store = store
        self._executions = executions
        self._lock_ttl = lock_ttl_seconds

    def lock(
        self,
        conversation_id: str,
        tool_name: str,
        params: dict[str, Any] | None,
        ttl_seconds: int | None = None,
    ) -> ExecutionLock:
        return ExecutionLock(
            self._store,
            lock_key(conversation_id, tool_name, params),
            ttl_seconds or self._lock_ttl,
        )

    async def is_duplicate_execution(
        self,
        conversation_id: str,
        tool_name: str,
        params: dict[str, Any] | None,
    ) -> bool:
        duplicate = await self._executions.is_duplicate(conversation_id, tool_name, params or {})
        if duplicate:
            logger.info(
                "Duplicate execution detected",
                extra={"conversation_id": conversation_id, "tool_name": tool_name},
            )
        return duplicate
