# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from .base import DbAdapter, DbTransaction


class SqliteTransaction(DbTransaction):
    """Statements bound to the connection holding the write lock."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        cursor = await self._db.execute(query, params or {})
        return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        async with self._db.execute(query, params or {}) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            cols = [c[0] for c in cursor.description]
            return dict(zip(cols, row, strict=True))


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens a connection per operation.

    Each operation gets its own connection, so concurrent coroutines never
    interleave statements on a shared handle; SQLite's file lock serializes
    writers. ``db_path`` must therefore name a file, not ``:memory:``.
    """

    def __init__(self, db_path: str, busy_timeout: float = 10.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds a writer waits for the lock before failing.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self, **kwargs: Any) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout, **kwargs)

    async def connect(self) -> None:
        """Create the parent directory and switch the file to WAL mode."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.commit()

    async def close(self) -> None:
        """Connections are closed per-operation, this is a no-op."""
        pass

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connect() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connect() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._connect() as db:
            await db.executescript(script)
            await db.commit()

    async def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert one row and return its rowid."""
        columns = list(data.keys())
        placeholders = ", ".join(f":{c}" for c in columns)
        col_list = ", ".join(columns)
        query = f"INSERT INTO {table} ({col_list}) VALUES ({placeholders})"
        async with self._connect() as db:
            cursor = await db.execute(query, data)
            await db.commit()
            return cursor.lastrowid

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteTransaction]:
        """``BEGIN IMMEDIATE`` transaction: takes the write lock up front."""
        async with self._connect(isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteTransaction(db)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
