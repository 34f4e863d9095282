# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter classes for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager


class DbTransaction(ABC):
    """Statements executed on one connection inside one write transaction."""

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend for use."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        ...

    @abstractmethod
    async def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert one row.

        Args:
            table: Table name.
            data: Column-value pairs.

        Returns:
            The generated row id.
        """
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[DbTransaction]:
        """Open a write transaction that excludes concurrent writers.

        Commits when the block exits normally, rolls back on exception.
        """
        ...
