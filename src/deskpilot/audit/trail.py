"""
Deskpilot Audit Trail

Append-only, tamper-evident debug trail of engine decisions.

Every entry is hashed together with the previous entry's hash
(SHA-256), so any later modification breaks the chain and is caught
by ``verify_integrity``. Subscribers get each new entry, which is how
entries are forwarded to an external message log.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from deskpilot.core.models import AuditEntry, ReasonCode
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.audit")

Subscriber = Callable[["HashedEntry"], Awaitable[None]]


class HashedEntry(BaseModel):
    """An audit entry linked into the hash chain."""

    entry: AuditEntry
    hash: str = Field(..., description="SHA-256 of this entry + previous hash")
    previous_hash: str
    sequence: int = 0


def _entry_hash(entry: AuditEntry, previous_hash: str, sequence: int) -> str:
    content = json.dumps(
        {
            "id": entry.id,
            "timestamp": entry.timestamp.isoformat(),
            "conversation_id": entry.conversation_id,
            "event_type": entry.event_type,
            "content": entry.content,
            "reason_code": entry.reason_code.value if entry.reason_code else None,
            "metadata": entry.metadata,
            "previous_hash": previous_hash,
            "sequence": sequence,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(content.encode()).hexdigest()


class AuditTrail:
    """In-memory hash-chained audit sink."""

    GENESIS_HASH = "0" * 64

    def __init__(self) -> None:
        self._entries: list[HashedEntry] = []
        self._current_hash = self.GENESIS_HASH
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [s for s in self._subscribers if s is not callback]

    async def append(self, entry: AuditEntry) -> HashedEntry:
        """Append an entry and notify subscribers.

        A failing subscriber is logged and skipped; it never blocks the trail.
        """
        sequence = len(self._entries)
        hashed = HashedEntry(
            entry=entry,
            hash=_entry_hash(entry, self._current_hash, sequence),
            previous_hash=self._current_hash,
            sequence=sequence,
        )
        self._entries.append(hashed)
        self._current_hash = hashed.hash

        for callback in self._subscribers:
            try:
                await callback(hashed)
            except Exception:
                logger.exception("Audit subscriber failed", extra={"conversation_id": entry.conversation_id})
        return hashed

    def verify_integrity(self) -> tuple[bool, str]:
        """Recompute the chain. Returns (is_valid, message)."""
        expected_prev = self.GENESIS_HASH
        for i, hashed in enumerate(self._entries):
            if hashed.previous_hash != expected_prev:
                return False, f"Chain broken at entry {i}"
            if _entry_hash(hashed.entry, hashed.previous_hash, hashed.sequence) != hashed.hash:
                return False, f"Tampered entry at {i}"
            expected_prev = hashed.hash
        return True, f"All {len(self._entries)} entries verified"

    def get_entries(
        self,
        conversation_id: str | None = None,
        reason_code: ReasonCode | None = None,
        event_type: str | None = None,
    ) -> list[AuditEntry]:
        results = [h.entry for h in self._entries]
        if conversation_id:
            results = [e for e in results if e.conversation_id == conversation_id]
        if reason_code:
            results = [e for e in results if e.reason_code == reason_code]
        if event_type:
            results = [e for e in results if e.event_type == event_type]
        return results

    def reason_codes(self, conversation_id: str | None = None) -> list[ReasonCode]:
        return [e.reason_code for e in self.get_entries(conversation_id) if e.reason_code]

    def export_json(self, path: str | Path) -> None:
        data = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total_entries": len(self._entries),
            "chain_head": self._current_hash,
            "entries": [h.model_dump(mode="json") for h in self._entries],
        }
        Path(path).write_text(json.dumps(data, indent=2, default=str))

    @property
    def head_hash(self) -> str:
        return self._current_hash

    def __len__(self) -> int:
        return len(self._entries)


class LoggingAuditSink:
    """Audit sink that writes entries to the deskpilot logger only."""

    def __init__(self, logger_name: str = "deskpilot.audit.trail"):
        self._logger = get_logger(logger_name)

    async def append(self, entry: AuditEntry) -> None:
        self._logger.info(
            entry.content,
            extra={
                "conversation_id": entry.conversation_id or None,
                "reason_code": entry.reason_code.value if entry.reason_code else None,
            },
        )
