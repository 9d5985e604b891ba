# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the queue table manager."""

import pytest

from hermes_mailing.models import DEFAULT_MESSAGE_FIELDS, FieldMapping, Job, MailStatus
from hermes_mailing.sql import SqliteAdapter
from hermes_mailing.status import StatusChange, WithoutRetry, WithRetry
from hermes_mailing.tables import MailQueueTable, SchemaError

pytestmark = pytest.mark.asyncio


async def test_schema_has_queue_columns(queue_table):
    columns = await queue_table.adapter.table_columns("hermes_mail")
    assert columns == [
        "id", "to", "from", "from_name", "reply_to", "is_html", "subject", "body",
        "created", "last_sent", "retry_times", "status", "assigned_to_svr", "sent_by",
        "signature",
    ]
    assert await queue_table.exists()
    await queue_table.drop_schema()
    assert not await queue_table.exists()


async def test_capabilities_default_table(queue_table):
    caps = await queue_table.resolve_capabilities(3, DEFAULT_MESSAGE_FIELDS)
    assert caps.retry_field == "retry_times"
    assert caps.affinity_field == "assigned_to_svr"
    assert caps.sent_by_field is None
    assert caps.policy == WithRetry(3)
    # cc, bcc and charset are not part of the default table
    assert set(caps.message_columns) == {
        "from", "from_name", "to", "reply_to", "subject", "body", "is_html",
    }


async def test_capabilities_disabled_retry(queue_table):
    caps = await queue_table.resolve_capabilities(0)
    assert caps.policy == WithoutRetry()


async def test_capabilities_missing_table(db_path):
    table = MailQueueTable(SqliteAdapter(db_path))
    with pytest.raises(SchemaError, match="does not exist"):
        await table.resolve_capabilities()


async def test_capabilities_missing_mandatory_column(db_path):
    adapter = SqliteAdapter(db_path)
    await adapter.execute("CREATE TABLE q (id INTEGER PRIMARY KEY, status TEXT)")
    table = MailQueueTable(adapter, "q")
    with pytest.raises(SchemaError, match="signature"):
        await table.resolve_capabilities()


async def test_capabilities_custom_names(db_path):
    adapter = SqliteAdapter(db_path)
    await adapter.execute(
        "CREATE TABLE outbox (mail_id INTEGER PRIMARY KEY, token TEXT, state TEXT, tries INTEGER)"
    )
    fields = FieldMapping(
        id_field="mail_id", signature_field="token", status_field="state",
        retry_field="tries", affinity_field="",
    )
    caps = await MailQueueTable(adapter, "outbox", fields).resolve_capabilities(2)
    assert (caps.id_field, caps.signature_field, caps.status_field) == ("mail_id", "token", "state")
    assert caps.retry_field == "tries"
    assert caps.affinity_field is None
    assert caps.policy == WithRetry(2)


async def test_fetch_signed_returns_active_rows_in_id_order(queue_table, add_messages):
    await add_messages(2, signature="mine")
    await add_messages(1, signature="mine", status="retry", retry_times=1)
    await add_messages(1, signature="mine", status="succeed")
    await add_messages(1, signature="mine", status="failed")
    await add_messages(1, signature="other")
    await add_messages(1, signature="mine", status="")
    caps = await queue_table.resolve_capabilities(3, DEFAULT_MESSAGE_FIELDS)

    jobs = await queue_table.fetch_signed(caps, "mine", 50)
    assert [job.id for job in jobs] == [1, 2, 3, 7]
    assert [job.status for job in jobs] == [
        MailStatus.NEVER, MailStatus.NEVER, MailStatus.RETRY, MailStatus.NEVER,
    ]
    assert jobs[2].retry_count == 1
    assert jobs[0].retry_count == 0
    assert jobs[0].payload["to"] == "to_0@example.com"
    assert jobs[0].signature == "mine"

    assert len(await queue_table.fetch_signed(caps, "mine", 2)) == 2


async def test_save_status_writes_only_status_and_retry(queue_table, add_messages):
    await add_messages(1, signature="s")
    caps = await queue_table.resolve_capabilities(3)
    job = (await queue_table.fetch_signed(caps, "s", 1))[0]

    await queue_table.save_status(caps, job, StatusChange(MailStatus.RETRY, 0), sent_by=4)
    row = await queue_table.fetch_one("SELECT * FROM hermes_mail WHERE id = 1")
    assert row["status"] == "retry"
    assert row["retry_times"] == 0
    assert row["sent_by"] is None
    assert row["signature"] == "s"
    assert row["subject"] == "Message 0"


async def test_save_status_success_leaves_retry_untouched(queue_table, add_messages):
    await add_messages(1, signature="s")
    caps = await queue_table.resolve_capabilities(3)
    job = (await queue_table.fetch_signed(caps, "s", 1))[0]

    await queue_table.save_status(caps, job, StatusChange(MailStatus.SUCCEED, 0))
    row = await queue_table.fetch_one("SELECT status, retry_times FROM hermes_mail")
    assert row == {"status": "succeed", "retry_times": None}


async def test_save_status_records_sent_by_when_enabled(db_path):
    table = MailQueueTable(SqliteAdapter(db_path), fields=FieldMapping(sent_by_field="sent_by"))
    await table.create_schema()
    await table.insert_test_messages(1)
    caps = await table.resolve_capabilities()
    job = Job(id=1)

    await table.save_status(caps, job, StatusChange(MailStatus.FAILED, 0), sent_by=7)
    row = await table.fetch_one("SELECT status, sent_by FROM hermes_mail")
    assert row == {"status": "failed", "sent_by": 7}


async def test_insert_test_messages(queue_table):
    progress = []
    inserted = await queue_table.insert_test_messages(
        1200, "from_{seq}@example.com", "to_{seq}@example.com", progress=progress.append
    )
    assert inserted == 1200
    assert progress == [500, 500, 200]

    row = await queue_table.fetch_one("SELECT * FROM hermes_mail WHERE id = 6")
    assert row["from"] == "from_5@example.com"
    assert row["reply_to"] == "from_5@example.com"
    assert row["to"] == "to_5@example.com"
    assert row["subject"] == "Hello Hermes Mailing"
    assert row["status"] is None
    assert row["signature"] is None


async def test_status_counts(queue_table, add_messages):
    await add_messages(3)
    await add_messages(2, status="retry", signature="x")
    await add_messages(1, status="succeed", signature="x")
    await add_messages(4, status="failed", signature="y")

    counts = await queue_table.status_counts()
    assert counts == {
        "never": 3, "retry": 2, "succeed": 1, "failed": 4, "other": 0, "unclaimed": 3,
    }


async def test_status_counts_groups_unknown_values(queue_table, add_messages):
    await add_messages(2, status="sending", signature="x")
    await add_messages(1, status="SUCCEED", signature="x")
    await add_messages(1)

    counts = await queue_table.status_counts()
    assert counts["other"] == 2
    assert counts["succeed"] == 1
    assert counts["never"] == 1
