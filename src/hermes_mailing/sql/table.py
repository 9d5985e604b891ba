# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class with Columns-based schema (async version)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .base import quote_identifier

if TYPE_CHECKING:
    from .base import DbAdapter

Integer = "INTEGER"
String = "VARCHAR"
Text = "TEXT"
Boolean = "BOOLEAN"
Timestamp = "TIMESTAMP"


@dataclass
class Column:
    """Column definition used to generate CREATE TABLE statements."""

    name: str
    type_: str
    size: int | None = None
    primary_key: bool = False
    nullable: bool = True
    default: str | None = None

    def to_sql(self) -> str:
        type_sql = f"{self.type_}({self.size})" if self.size else self.type_
        parts = [quote_identifier(self.name), type_sql]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


class Columns(dict[str, Column]):
    """Ordered collection of column definitions."""

    def column(self, name: str, type_: str, **kwargs: Any) -> Column:
        col = Column(name, type_, **kwargs)
        self[name] = col
        return col


class Table:
    """Base class for async table managers.

    Subclasses define columns via configure() hook and implement
    domain-specific operations.

    Attributes:
        name: Table name in database.
        adapter: DbAdapter used for every query.
        columns: Column definitions.
    """

    name: str

    def __init__(self, adapter: DbAdapter, name: str | None = None) -> None:
        self.adapter = adapter
        if name:
            self.name = name
        if not getattr(self, "name", None):
            raise ValueError(f"{type(self).__name__} must define 'name'")
        quote_identifier(self.name)

        self.columns = Columns()
        self.configure()

    def configure(self) -> None:
        """Override to define columns. Called during __init__."""
        pass

    @property
    def sql_name(self) -> str:
        return quote_identifier(self.name)

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def create_table_sql(self) -> str:
        """Generate CREATE TABLE IF NOT EXISTS statement."""
        col_defs = []
        for col in self.columns.values():
            if col.primary_key and col.type_ == Integer:
                col_defs.append(self.adapter.pk_column(col.name))
            else:
                col_defs.append(col.to_sql())
        return f"CREATE TABLE IF NOT EXISTS {self.sql_name} (\n    " + ",\n    ".join(col_defs) + "\n)"

    async def create_schema(self) -> None:
        """Create table if not exists."""
        await self.adapter.execute(self.create_table_sql())

    async def drop_schema(self) -> None:
        """Drop the table if it exists."""
        await self.adapter.execute(f"DROP TABLE IF EXISTS {self.sql_name}")

    async def exists(self) -> bool:
        """Return True when the table is present in the database."""
        return bool(await self.adapter.table_columns(self.name))

    # -------------------------------------------------------------------------
    # Raw Query
    # -------------------------------------------------------------------------

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute raw query, return single row."""
        return await self.adapter.fetch_one(query, params)

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute raw query, return all rows."""
        return await self.adapter.fetch_all(query, params)

    async def execute(
        self, query: str, params: dict[str, Any] | None = None
    ) -> int:
        """Execute raw query, return affected row count."""
        return await self.adapter.execute(query, params)


__all__ = ["Boolean", "Column", "Columns", "Integer", "String", "Table", "Text", "Timestamp"]
