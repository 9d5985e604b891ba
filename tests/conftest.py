# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: a SQLite queue table in a temporary directory."""

from typing import Any

import pytest
import pytest_asyncio

from hermes_mailing.sql import SqliteAdapter
from hermes_mailing.tables import MailQueueTable


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "hermes_mail.db")


@pytest_asyncio.fixture
async def queue_table(db_path):
    """Installed queue table with the default column names."""
    table = MailQueueTable(SqliteAdapter(db_path, busy_timeout=10.0))
    await table.create_schema()
    return table


@pytest.fixture
def add_messages(queue_table):
    """Insert ``count`` deliverable rows, with optional column values."""

    async def _add(count: int, **columns: Any) -> None:
        rows = []
        for seq in range(count):
            row = {
                "to": f"to_{seq}@example.com",
                "from_addr": f"from_{seq}@example.com",
                "subject": f"Message {seq}",
                "body": "Hello",
                "assigned_to_svr": None,
                "status": None,
                "retry_times": None,
                "signature": None,
            }
            row.update(columns)
            rows.append(row)
        await queue_table.adapter.execute_many(
            """
            INSERT INTO hermes_mail ("to", "from", subject, body, assigned_to_svr, status, retry_times, signature)
            VALUES (:to, :from_addr, :subject, :body, :assigned_to_svr, :status, :retry_times, :signature)
            """,
            rows,
        )

    return _add
