# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Persistent usage store for the mail gateway.

The UsageStore owns the three tables the gateway writes:

- ``rate_limits``: fixed-window counters keyed by
  (client_key, endpoint_class, window_index)
- ``api_key_usage``: per-credential success/failure ledger
- ``request_logs``: append-only audit trail of handled requests

Every mutation is a single atomic statement or runs inside a
``BEGIN IMMEDIATE`` transaction; no read-then-write pair is ever issued
without the write lock held.

Example:
    Opening the store at startup::

        store = UsageStore(create_adapter("/data/mailgateway.db"))
        await store.open()
        allowed, count = await store.increment_window("10.0.0.1", "send", 29000000, 5)
        await store.close()
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from .logger import get_logger
from .sql import DbAdapter

logger = get_logger("UsageStore")

SCHEMA = """
CREATE TABLE IF NOT EXISTS rate_limits (
    client_key TEXT NOT NULL,
    endpoint_class TEXT NOT NULL,
    window_index INTEGER NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (client_key, endpoint_class, window_index)
);

CREATE TABLE IF NOT EXISTS api_key_usage (
    api_key TEXT PRIMARY KEY,
    total_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_used TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS request_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    method TEXT NOT NULL,
    path TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    request_bytes INTEGER DEFAULT 0,
    response_bytes INTEGER DEFAULT 0,
    duration_ms REAL DEFAULT 0,
    client_ip TEXT,
    user_agent TEXT,
    provider TEXT,
    success INTEGER DEFAULT 0,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_request_logs_timestamp ON request_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_request_logs_path ON request_logs(path);
CREATE INDEX IF NOT EXISTS idx_request_logs_status ON request_logs(status_code);
CREATE INDEX IF NOT EXISTS idx_request_logs_method ON request_logs(method);
CREATE INDEX IF NOT EXISTS idx_api_key_usage_last_used ON api_key_usage(last_used);
"""


@dataclass
class LogFilter:
    """Optional filters shared by the log listing and counting queries.

    Attributes:
        method: Exact HTTP method.
        path: Substring of the request path.
        status_code: Exact status code.
        start_date: Inclusive lower bound on the ISO timestamp.
        end_date: Inclusive upper bound on the ISO timestamp.
    """

    method: str | None = None
    path: str | None = None
    status_code: int | None = None
    start_date: str | None = None
    end_date: str | None = None

    def where(self) -> tuple[str, dict[str, Any]]:
        """Build the WHERE clause and its parameters."""
        clauses = ["1=1"]
        params: dict[str, Any] = {}
        if self.method:
            clauses.append("method = :method")
            params["method"] = self.method.upper()
        if self.path:
            clauses.append("path LIKE :path")
            params["path"] = f"%{self.path}%"
        if self.status_code:
            clauses.append("status_code = :status_code")
            params["status_code"] = self.status_code
        if self.start_date:
            clauses.append("timestamp >= :start_date")
            params["start_date"] = self.start_date
        if self.end_date:
            clauses.append("timestamp <= :end_date")
            params["end_date"] = self.end_date
        return " AND ".join(clauses), params


class UsageStore:
    """Rate-limit windows, API-key ledger and request log over a DbAdapter.

    The store is created once per process and shared by every request; it
    keeps no mutable state of its own besides the adapter.

    Attributes:
        db: The DbAdapter executing the queries.
    """

    def __init__(self, db: DbAdapter):
        self.db = db

    async def open(self) -> None:
        """Connect the adapter and create the schema if missing."""
        await self.db.connect()
        await self.db.execute_script(SCHEMA)
        logger.info("Usage store ready")

    async def close(self) -> None:
        await self.db.close()

    # Rate-limit windows -------------------------------------------------------
    async def increment_window(
        self, client_key: str, endpoint_class: str, window_index: int, limit: int
    ) -> tuple[bool, int]:
        """Increment a window counter unless it already reached ``limit``.

        The row is created at zero if missing, then incremented with a
        conditional UPDATE, all under one write lock. A rejected call leaves
        the count untouched.

        Returns:
            Tuple of (incremented, count after the operation).
        """
        key = {
            "client_key": client_key,
            "endpoint_class": endpoint_class,
            "window_index": window_index,
        }
        async with self.db.transaction() as tx:
            await tx.execute(
                """
                INSERT OR IGNORE INTO rate_limits (client_key, endpoint_class, window_index, count)
                VALUES (:client_key, :endpoint_class, :window_index, 0)
                """,
                key,
            )
            updated = await tx.execute(
                """
                UPDATE rate_limits SET count = count + 1
                WHERE client_key = :client_key AND endpoint_class = :endpoint_class
                  AND window_index = :window_index AND count < :limit
                """,
                {**key, "limit": limit},
            )
            row = await tx.fetch_one(
                """
                SELECT count FROM rate_limits
                WHERE client_key = :client_key AND endpoint_class = :endpoint_class
                  AND window_index = :window_index
                """,
                key,
            )
        return updated == 1, int(row["count"]) if row else 0

    async def get_window_count(
        self, client_key: str, endpoint_class: str, window_index: int
    ) -> int:
        """Read-only inspection of one window's counter, 0 when absent.

        The rate gate never reads counters outside ``increment_window``; this
        is for diagnostics and test assertions.
        """
        row = await self.db.fetch_one(
            """
            SELECT count FROM rate_limits
            WHERE client_key = :client_key AND endpoint_class = :endpoint_class
              AND window_index = :window_index
            """,
            {
                "client_key": client_key,
                "endpoint_class": endpoint_class,
                "window_index": window_index,
            },
        )
        return int(row["count"]) if row else 0

    async def reset_rate_limits(self, client_key: str) -> int:
        """Delete every window of a client, whatever the endpoint class."""
        return await self.db.execute(
            "DELETE FROM rate_limits WHERE client_key = :client_key",
            {"client_key": client_key},
        )

    async def purge_windows_before(self, endpoint_class: str, window_index: int) -> int:
        """Delete closed windows of one endpoint class."""
        return await self.db.execute(
            """
            DELETE FROM rate_limits
            WHERE endpoint_class = :endpoint_class AND window_index < :window_index
            """,
            {"endpoint_class": endpoint_class, "window_index": window_index},
        )

    # API-key ledger -----------------------------------------------------------
    async def record_api_key_usage(self, api_key: str, success: bool, used_at: str) -> None:
        """Count one completed request for a credential fingerprint."""
        await self.db.execute(
            """
            INSERT INTO api_key_usage (api_key, total_count, success_count, failure_count, last_used)
            VALUES (:api_key, 1, :ok, :ko, :used_at)
            ON CONFLICT (api_key) DO UPDATE SET
                total_count = total_count + 1,
                success_count = success_count + :ok,
                failure_count = failure_count + :ko,
                last_used = :used_at
            """,
            {
                "api_key": api_key,
                "ok": 1 if success else 0,
                "ko": 0 if success else 1,
                "used_at": used_at,
            },
        )

    async def get_api_key_usage(self, api_key: str) -> dict[str, Any] | None:
        return await self.db.fetch_one(
            "SELECT * FROM api_key_usage WHERE api_key = :api_key", {"api_key": api_key}
        )

    async def list_api_key_usage(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recently used credentials first."""
        return await self.db.fetch_all(
            "SELECT * FROM api_key_usage ORDER BY last_used DESC LIMIT :limit",
            {"limit": limit},
        )

    # Request log --------------------------------------------------------------
    async def insert_request_log(self, row: dict[str, Any]) -> int:
        return await self.db.insert("request_logs", row)

    async def list_request_logs(
        self, limit: int = 100, offset: int = 0, filters: LogFilter | None = None
    ) -> list[dict[str, Any]]:
        where, params = (filters or LogFilter()).where()
        rows = await self.db.fetch_all(
            f"""
            SELECT * FROM request_logs WHERE {where}
            ORDER BY timestamp DESC, id DESC LIMIT :limit OFFSET :offset
            """,
            {**params, "limit": limit, "offset": offset},
        )
        for row in rows:
            row["success"] = bool(row.get("success"))
        return rows

    async def count_request_logs(self, filters: LogFilter | None = None) -> int:
        where, params = (filters or LogFilter()).where()
        row = await self.db.fetch_one(
            f"SELECT COUNT(*) AS total FROM request_logs WHERE {where}", params
        )
        return int(row["total"]) if row else 0

    async def request_stats(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> dict[str, Any]:
        """Aggregate totals over the request log for an optional date range."""
        where, params = LogFilter(start_date=start_date, end_date=end_date).where()
        totals = await self.db.fetch_one(
            f"""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(success), 0) AS successful,
                   COALESCE(AVG(duration_ms), 0) AS avg_duration
            FROM request_logs WHERE {where}
            """,
            params,
        )
        breakdown_rows = await self.db.fetch_all(
            f"""
            SELECT status_code, COUNT(*) AS hits FROM request_logs
            WHERE {where} GROUP BY status_code ORDER BY status_code
            """,
            params,
        )
        total = int(totals["total"]) if totals else 0
        successful = int(totals["successful"]) if totals else 0
        return {
            "totalRequests": total,
            "successfulRequests": successful,
            "failedRequests": total - successful,
            "averageResponseTime": float(totals["avg_duration"]) if totals else 0.0,
            "statusCodeBreakdown": {
                str(r["status_code"]): int(r["hits"]) for r in breakdown_rows
            },
        }

    async def delete_logs_older_than(self, days: int, now: datetime | None = None) -> int:
        """Purge request log entries older than ``days`` days."""
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=days)).isoformat()
        deleted = await self.db.execute(
            "DELETE FROM request_logs WHERE timestamp < :cutoff", {"cutoff": cutoff}
        )
        logger.info("Deleted %d request logs older than %d days", deleted, days)
        return deleted
