# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Minimal async SQL layer with adapter pattern.

Usage:
    adapter = create_adapter("/data/mailgateway.db")   # SQLite (path)
    adapter = create_adapter("sqlite:.data/gw.db")     # SQLite (prefixed)

    await adapter.connect()
    rows = await adapter.fetch_all(
        "SELECT * FROM request_logs WHERE method = :method",
        {"method": "POST"}
    )
    async with adapter.transaction() as tx:
        await tx.execute("UPDATE ...", {...})
    await adapter.close()
"""

from .base import DbAdapter, DbTransaction
from .sqlite import SqliteAdapter

__all__ = [
    "DbAdapter",
    "DbTransaction",
    "SqliteAdapter",
    "create_adapter",
]


def create_adapter(connection_string: str) -> DbAdapter:
    """Create database adapter from connection string.

    Connection string formats:
        - "sqlite:/path/to/db.sqlite" or just "/path/to/db.sqlite"
        - a relative path such as ".data/mailgateway.db"

    Raises:
        ValueError: If the connection string names an unsupported backend.
    """
    if ":" not in connection_string:
        return SqliteAdapter(connection_string)

    db_type, connection_info = connection_string.split(":", 1)
    if db_type.lower() == "sqlite":
        return SqliteAdapter(connection_info)

    # Windows drive letters ("C:\...") are paths, not backend prefixes
    if len(db_type) == 1:
        return SqliteAdapter(connection_string)

    raise ValueError(
        f"Unknown database type: '{db_type}'. "
        "Supported: sqlite"
    )
