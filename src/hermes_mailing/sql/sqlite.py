# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import aiosqlite

from .base import DbAdapter, quote_identifier

if TYPE_CHECKING:
    from collections.abc import Sequence


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation.

    Every worker process talks to the same database file; writers are
    serialized by SQLite's database lock, waited for up to ``busy_timeout``
    seconds before the operation fails.
    """

    dialect = "sqlite"

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
            busy_timeout: Seconds to wait for a locked database.
        """
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout

    def _connect(self, **kwargs: Any) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout, **kwargs)

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column (SQLite)."""
        return f"{quote_identifier(name)} INTEGER PRIMARY KEY AUTOINCREMENT"

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def execute_many(
        self, query: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute query multiple times with different params (batch insert)."""
        async with self._connect() as db:
            await db.executemany(query, params_list)
            await db.commit()
            return len(params_list)

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

    async def table_columns(self, table: str) -> list[str]:
        """Return column names using ``PRAGMA table_info``."""
        async with self._connect() as db:
            async with db.execute(f"PRAGMA table_info({quote_identifier(table)})") as cursor:
                rows = await cursor.fetchall()
        return [row[1] for row in rows]

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
        """Bounded update under an immediate write transaction.

        ``BEGIN IMMEDIATE`` takes the database write lock before the row
        selection runs, so the subquery and the update see the same state and
        no other connection can sign the same rows in between. The condition
        is repeated on the outer update as a conditional-write guard.
        """
        if limit <= 0:
            return 0
        tbl = quote_identifier(table)
        pk = quote_identifier(key)
        assignments, bound = self._assignments(values)
        bound.update(params or {})
        bound["claim_limit"] = int(limit)
        query = f"""
            UPDATE {tbl} SET {assignments}
            WHERE {pk} IN (
                SELECT {pk} FROM {tbl}
                WHERE {where}
                ORDER BY {pk}
                LIMIT :claim_limit
            )
            AND ({where})
        """
        async with self._connect(isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(query, bound)
                rowcount = cursor.rowcount
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
            return rowcount
