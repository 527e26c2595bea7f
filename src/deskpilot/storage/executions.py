"""
Deskpilot Execution History

Append-only persistence of ToolExecutionRecords. Besides being the
audit log, the history answers the duplicate question: has this exact
(tool, params) pair already succeeded in this conversation?

Parameters are stored in canonical form so the comparison is
independent of key order.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from deskpilot.core.models import ExecutionStatus, ReasonCode, ToolExecutionRecord
from deskpilot.intent.hasher import canonical_params
from deskpilot.storage.db import connect


class ExecutionRepository(ABC):
    """Storage for tool execution records."""

    @abstractmethod
    async def append(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        ...

    @abstractmethod
    async def is_duplicate(self, conversation_id: str, tool_name: str, params: dict[str, Any]) -> bool:
        """True if an identical call already succeeded in the conversation."""
        ...

    @abstractmethod
    async def get_by_conversation(self, conversation_id: str) -> list[ToolExecutionRecord]:
        ...

    @abstractmethod
    async def get_by_status(self, status: ExecutionStatus, limit: int = 100) -> list[ToolExecutionRecord]:
        ...

    @abstractmethod
    async def stats(self) -> list[dict[str, Any]]:
        """Per-tool counts by status and average successful execution time."""
        ...


def _summarize(records: list[ToolExecutionRecord]) -> list[dict[str, Any]]:
    by_tool: dict[str, dict[str, Any]] = {}
    timings: dict[str, list[float]] = {}
    for record in records:
        row = by_tool.setdefault(record.tool_name, {
            "tool_name": record.tool_name,
            "total_executions": 0,
            "successful": 0,
            "failed": 0,
            "blocked": 0,
            "duplicate": 0,
            "avg_execution_time_ms": None,
        })
        row["total_executions"] += 1
        if record.status == ExecutionStatus.EXECUTED:
            row["successful"] += 1
            timings.setdefault(record.tool_name, []).append(record.execution_time_ms)
        else:
            row[record.status.value] += 1
    for name, values in timings.items():
        by_tool[name]["avg_execution_time_ms"] = sum(values) / len(values)
    return sorted(by_tool.values(), key=lambda r: r["total_executions"], reverse=True)


class InMemoryExecutionRepository(ExecutionRepository):
    """List-backed repository for tests and single-process runs."""

    def __init__(self) -> None:
        self._records: list[ToolExecutionRecord] = []

    async def append(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        self._records.append(record)
        return record

    async def is_duplicate(self, conversation_id: str, tool_name: str, params: dict[str, Any]) -> bool:
        wanted = canonical_params(params)
        return any(
            r.conversation_id == conversation_id
            and r.tool_name == tool_name
            and r.success
            and canonical_params(r.params) == wanted
            for r in self._records
        )

    async def get_by_conversation(self, conversation_id: str) -> list[ToolExecutionRecord]:
        return [r for r in self._records if r.conversation_id == conversation_id]

    async def get_by_status(self, status: ExecutionStatus, limit: int = 100) -> list[ToolExecutionRecord]:
        matching = [r for r in reversed(self._records) if r.status == status]
        return matching[:limit]

    async def stats(self) -> list[dict[str, Any]]:
        return _summarize(self._records)

    def __len__(self) -> int:
        return len(self._records)


class SqlExecutionRepository(ExecutionRepository):
    """SQLite/PostgreSQL repository over ``deskpilot.storage.db``."""

    def __init__(self, db_url: str = "deskpilot.db"):
        self._db_url = db_url
        self._conn = connect(db_url)
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS tool_executions (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                params TEXT DEFAULT '{}',
                params_canonical TEXT DEFAULT '{}',
                result TEXT,
                success INTEGER DEFAULT 0,
                execution_time_ms REAL DEFAULT 0,
                status TEXT DEFAULT 'failed',
                reason_code TEXT,
                error_reason TEXT,
                created_at TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_tool_executions_conversation ON tool_executions(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_tool_executions_status ON tool_executions(status);
            CREATE INDEX IF NOT EXISTS idx_tool_executions_tool_name ON tool_executions(tool_name)
        """)

    async def append(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        with self._conn.transaction():
            self._conn.execute(
                """INSERT INTO tool_executions
                   (id, conversation_id, tool_name, params, params_canonical, result,
                    success, execution_time_ms, status, reason_code, error_reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.conversation_id,
                    record.tool_name,
                    json.dumps(record.params, default=str),
                    canonical_params(record.params),
                    json.dumps(record.result, default=str),
                    int(record.success),
                    record.execution_time_ms,
                    record.status.value,
                    record.reason_code.value if record.reason_code else None,
                    record.error_reason,
                    record.created_at.isoformat(),
                ),
            )
        return record

    async def is_duplicate(self, conversation_id: str, tool_name: str, params: dict[str, Any]) -> bool:
        row = self._conn.execute(
            """SELECT id FROM tool_executions
               WHERE conversation_id = ? AND tool_name = ? AND params_canonical = ? AND success = 1
               LIMIT 1""",
            (conversation_id, tool_name, canonical_params(params)),
        ).fetchone()
        return row is not None

    async def get_by_conversation(self, conversation_id: str) -> list[ToolExecutionRecord]:
        rows = self._conn.execute(
            "SELECT * FROM tool_executions WHERE conversation_id = ? ORDER BY created_at ASC",
            (conversation_id,),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    async def get_by_status(self, status: ExecutionStatus, limit: int = 100) -> list[ToolExecutionRecord]:
        rows = self._conn.execute(
            "SELECT * FROM tool_executions WHERE status = ? ORDER BY created_at DESC LIMIT ?",
            (status.value, limit),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    async def stats(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """SELECT
                   tool_name,
                   COUNT(*) AS total_executions,
                   SUM(CASE WHEN status = 'executed' THEN 1 ELSE 0 END) AS successful,
                   SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                   SUM(CASE WHEN status = 'blocked' THEN 1 ELSE 0 END) AS blocked,
                   SUM(CASE WHEN status = 'duplicate' THEN 1 ELSE 0 END) AS duplicate,
                   AVG(CASE WHEN status = 'executed' THEN execution_time_ms END) AS avg_execution_time_ms
               FROM tool_executions
               GROUP BY tool_name
               ORDER BY total_executions DESC"""
        ).fetchall()
        return rows

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> ToolExecutionRecord:
        return ToolExecutionRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            tool_name=row["tool_name"],
            params=json.loads(row["params"] or "{}"),
            result=json.loads(row["result"]) if row["result"] else None,
            success=bool(row["success"]),
            execution_time_ms=row["execution_time_ms"] or 0.0,
            status=ExecutionStatus(row["status"]),
            reason_code=ReasonCode(row["reason_code"]) if row["reason_code"] else None,
            error_reason=row["error_reason"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
