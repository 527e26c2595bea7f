"""
Deskpilot Database Connection

Thin wrapper that lets the execution repository run the same SQL on
SQLite and PostgreSQL. The backend follows the URL scheme:
- ``postgresql://`` / ``postgres://``: psycopg
- anything else (a file path or ``:memory:``): sqlite3

Statements use ``?`` placeholders; they are rewritten to ``%s`` for
psycopg. Writes go through ``transaction()`` so a failed insert never
leaves a half-open transaction behind.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

POSTGRES_SCHEMES = ("postgresql://", "postgres://")


class DbConnection:
    """One open connection plus the cursor of the last statement."""

    def __init__(self, conn: Any, *, is_postgres: bool = False) -> None:
        self._conn = conn
        self._cursor: Any = None
        self.is_postgres = is_postgres

    @property
    def backend(self) -> str:
        return "postgres" if self.is_postgres else "sqlite"

    def execute(self, sql: str, params: tuple = ()) -> DbConnection:
        if self.is_postgres:
            self._cursor = self._conn.cursor()
            self._cursor.execute(sql.replace("?", "%s"), params or None)
        else:
            self._cursor = self._conn.execute(sql, params)
        return self

    def executescript(self, sql: str) -> None:
        """Run ``;``-separated DDL inside one transaction."""
        statements = [s.strip() for s in sql.split(";") if s.strip()]
        with self.transaction():
            for statement in statements:
                self.execute(statement)

    def fetchone(self) -> dict[str, Any] | None:
        if self._cursor is None:
            return None
        row = self._cursor.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self) -> list[dict[str, Any]]:
        if self._cursor is None:
            return []
        return [dict(r) for r in self._cursor.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[DbConnection]:
        """Commit on success, roll back and re-raise on error."""
        try:
            yield self
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()

    def commit(self) -> None:
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


def connect(db_url: str) -> DbConnection:
    """Open a connection for a database URL or SQLite path."""
    if db_url.startswith(POSTGRES_SCHEMES):
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError:
            raise ImportError(
                "PostgreSQL support requires psycopg. Install with: pip install 'deskpilot[postgres]'"
            ) from None
        return DbConnection(psycopg.connect(db_url, row_factory=dict_row), is_postgres=True)

    conn = sqlite3.connect(db_url, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return DbConnection(conn)
