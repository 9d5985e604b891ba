# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for atomic claiming on SQLite."""

import asyncio
import logging

import pytest

from hermes_mailing.claimer import Claimer
from hermes_mailing.models import FieldMapping
from hermes_mailing.sql import SqliteAdapter
from hermes_mailing.tables import MailQueueTable

pytestmark = pytest.mark.asyncio


async def signatures(table):
    rows = await table.fetch_all("SELECT id, signature FROM hermes_mail ORDER BY id")
    return {row["id"]: row["signature"] for row in rows}


async def make_claimer(table):
    caps = await table.resolve_capabilities()
    return Claimer(table, caps)


async def test_claim_is_bounded_by_limit(queue_table, add_messages):
    await add_messages(25)
    claimer = await make_claimer(queue_table)

    batch = await claimer.claim("sig-a", 10, server_id=0)
    assert (batch.requested, batch.claimed, batch.signature) == (10, 10, "sig-a")

    owned = [rid for rid, sig in (await signatures(queue_table)).items() if sig == "sig-a"]
    assert owned == list(range(1, 11))


async def test_claimed_rows_are_not_claimed_again(queue_table, add_messages):
    await add_messages(15)
    claimer = await make_claimer(queue_table)

    assert (await claimer.claim("sig-a", 10, server_id=0)).claimed == 10
    assert (await claimer.claim("sig-b", 10, server_id=0)).claimed == 5
    assert (await claimer.claim("sig-c", 10, server_id=0)).claimed == 0

    sigs = await signatures(queue_table)
    assert list(sigs.values()).count("sig-a") == 10
    assert list(sigs.values()).count("sig-b") == 5


async def test_empty_string_signature_is_unclaimed(queue_table, add_messages):
    await add_messages(3, signature="")
    claimer = await make_claimer(queue_table)
    assert (await claimer.claim("sig", 10, server_id=0)).claimed == 3


async def test_zero_limit_claims_nothing(queue_table, add_messages):
    await add_messages(3)
    claimer = await make_claimer(queue_table)
    batch = await claimer.claim("sig", 0, server_id=0)
    assert batch.empty
    assert set((await signatures(queue_table)).values()) == {None}


async def test_affinity_with_unassigned(queue_table, add_messages):
    await add_messages(2, assigned_to_svr=1)
    await add_messages(2, assigned_to_svr=2)
    await add_messages(2)
    claimer = await make_claimer(queue_table)

    batch = await claimer.claim("sig-1", 100, server_id=1, include_unassigned=True)
    assert batch.claimed == 4
    rows = await queue_table.fetch_all(
        "SELECT assigned_to_svr FROM hermes_mail WHERE signature = 'sig-1'"
    )
    assert sorted(row["assigned_to_svr"] for row in rows if row["assigned_to_svr"]) == [1, 1]


async def test_affinity_without_unassigned(queue_table, add_messages):
    await add_messages(2, assigned_to_svr=1)
    await add_messages(3)
    claimer = await make_claimer(queue_table)

    batch = await claimer.claim("sig-1", 100, server_id=1, include_unassigned=False)
    assert batch.claimed == 2


async def test_missing_affinity_column(db_path, caplog):
    adapter = SqliteAdapter(db_path)
    await adapter.execute(
        "CREATE TABLE queue (id INTEGER PRIMARY KEY, signature TEXT, status TEXT, body TEXT)"
    )
    await adapter.execute_many(
        "INSERT INTO queue (body) VALUES (:body)", [{"body": "x"} for _ in range(4)]
    )
    table = MailQueueTable(adapter, "queue", FieldMapping())
    claimer = Claimer(table, await table.resolve_capabilities())
    assert not claimer.caps.has_affinity

    with caplog.at_level(logging.WARNING):
        batch = await claimer.claim("sig", 10, server_id=1, include_unassigned=False)
    assert batch.claimed == 0
    assert "nothing can be claimed" in caplog.text

    batch = await claimer.claim("sig", 10, server_id=1, include_unassigned=True)
    assert batch.claimed == 4


async def test_concurrent_claimers_get_disjoint_rows(queue_table, add_messages, db_path):
    await add_messages(200)
    caps = await queue_table.resolve_capabilities()

    # One adapter per worker, as separate processes would have
    claimers = [
        Claimer(MailQueueTable(SqliteAdapter(db_path, busy_timeout=10.0)), caps)
        for _ in range(8)
    ]

    async def worker(n, claimer):
        total = 0
        while True:
            batch = await claimer.claim(f"worker-{n}", 7, server_id=0)
            if batch.empty:
                return total
            total += batch.claimed

    totals = await asyncio.gather(*(worker(n, c) for n, c in enumerate(claimers)))
    assert sum(totals) == 200

    sigs = await signatures(queue_table)
    assert None not in sigs.values()
    for n, total in enumerate(totals):
        assert list(sigs.values()).count(f"worker-{n}") == total
