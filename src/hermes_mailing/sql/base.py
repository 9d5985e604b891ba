# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """Return ``name`` double-quoted for use as a table or column name.

    Table and column names come from configuration, so anything that is not a
    plain identifier is rejected instead of being escaped.

    Raises:
        ValueError: If ``name`` is not a valid SQL identifier.
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders (supported by both SQLite and PostgreSQL).
    """

    dialect: str = ""

    @abstractmethod
    async def connect(self) -> None:
        """Establish database connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def execute_many(
        self, query: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute query multiple times with different params (batch insert)."""
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
    async def table_columns(self, table: str) -> list[str]:
        """Return the column names of ``table`` (empty list if it does not exist)."""
        ...

    @abstractmethod
    async def limited_update(
        self,
        table: str,
        values: dict[str, Any],
        where: str,
        params: dict[str, Any] | None = None,
        *,
        limit: int,
        key: str = "id",
    ) -> int:
        """Atomically update at most ``limit`` rows matching ``where``.

        The selection of the rows and their update happen as one locked
        operation, so two concurrent callers never update the same row.

        Args:
            table: Table name.
            values: Column-value pairs to set.
            where: SQL condition using :name placeholders.
            params: Values for the placeholders in ``where``.
            limit: Maximum number of rows to update.
            key: Unique key column used to bound the update.

        Returns:
            Number of rows actually updated.
        """
        ...

    @abstractmethod
    def pk_column(self, name: str) -> str:
        """Return SQL definition for an autoincrement primary key column."""
        ...

    @staticmethod
    def _assignments(values: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Build a SET clause with ``set_``-prefixed placeholders."""
        parts = [f"{quote_identifier(col)} = :set_{col}" for col in values]
        bound = {f"set_{col}": value for col, value in values.items()}
        return ", ".join(parts), bound
