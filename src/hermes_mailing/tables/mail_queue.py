# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mail queue table manager.

The queue table is shared by every worker process. Column names are taken
from a :class:`FieldMapping` and checked once against the real table: the
result is a :class:`QueueCapabilities` value saying which optional roles
(retry counter, server affinity, sent-by) are actually available.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..logger import get_logger
from ..models import FieldMapping, Job, MailStatus
from ..sql import Boolean, Integer, String, Table, Text, Timestamp, quote_identifier
from ..status import RetryPolicy, StatusChange, WithoutRetry, retry_policy

logger = get_logger("MailQueue")

TEST_SUBJECT = "Hello Hermes Mailing"
TEST_BODY = "Hey! Thank you for using Hermes Mailing application."

# Statuses still waiting for a send attempt; NEVER is stored as NULL or ''
ACTIVE_STATUS_SQL = "({status} IS NULL OR {status} = '' OR {status} = 'retry')"
EMPTY_SIGNATURE_SQL = "({signature} IS NULL OR {signature} = '')"


class SchemaError(RuntimeError):
    """The queue table is missing or lacks a mandatory column."""


@dataclass(frozen=True)
class QueueCapabilities:
    """Column roles available in the queue table.

    Optional roles are None when not configured or not present.
    """

    id_field: str
    signature_field: str
    status_field: str
    retry_field: str | None = None
    affinity_field: str | None = None
    sent_by_field: str | None = None
    message_columns: dict[str, str] = field(default_factory=dict)
    policy: RetryPolicy = field(default_factory=WithoutRetry)

    @property
    def has_retry(self) -> bool:
        return self.retry_field is not None

    @property
    def has_affinity(self) -> bool:
        return self.affinity_field is not None


class MailQueueTable(Table):
    """Queue of outbound messages.

    Fields (default names):
    - id: Autoincrement key
    - to, from, from_name, reply_to, is_html, subject, body: Message data
    - created, last_sent: Timestamps
    - retry_times: Retries made so far
    - status: NULL (never sent), retry, succeed, failed
    - assigned_to_svr: Server allowed to send the row, NULL for any
    - sent_by: Server that last attempted the row
    - signature: Claim token of the owning worker
    """

    name = "hermes_mail"

    def __init__(self, adapter, name: str | None = None, fields: FieldMapping | None = None):
        self.fields = fields or FieldMapping()
        super().__init__(adapter, name)

    def configure(self) -> None:
        f = self.fields
        c = self.columns
        c.column(f.id_field, Integer, primary_key=True)
        c.column("to", String, size=50)
        c.column("from", String, size=50)
        c.column("from_name", String, size=50)
        c.column("reply_to", String, size=50)
        c.column("is_html", Boolean, default="TRUE")
        c.column("subject", String, size=100)
        c.column("body", Text)
        c.column("created", Timestamp, default="CURRENT_TIMESTAMP")
        c.column("last_sent", Timestamp)
        c.column(f.retry_field or "retry_times", Integer)
        c.column(f.status_field, String, size=10)
        c.column(f.affinity_field or "assigned_to_svr", Integer)
        c.column(f.sent_by_field or "sent_by", Integer)
        c.column(f.signature_field, String, size=32)

    def _q(self, name: str) -> str:
        return quote_identifier(name)

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    async def resolve_capabilities(
        self, retry_times: int = 0, message_fields: Mapping[str, str] | None = None
    ) -> QueueCapabilities:
        """Check the configured columns against the real table.

        Raises:
            SchemaError: If the table or a mandatory column is missing.
        """
        columns = set(await self.adapter.table_columns(self.name))
        if not columns:
            raise SchemaError(f"Queue table '{self.name}' does not exist")

        f = self.fields
        missing = [
            col for col in (f.id_field, f.signature_field, f.status_field) if col not in columns
        ]
        if missing:
            raise SchemaError(
                f"Queue table '{self.name}' lacks mandatory column(s): {', '.join(missing)}"
            )

        def optional(role: str, name: str | None) -> str | None:
            if name is None:
                return None
            if name not in columns:
                logger.info("Column '%s' not found, %s disabled", name, role)
                return None
            return name

        retry_field = optional("retry tracking", f.retry_field)
        message_columns = {
            col: attr for col, attr in (message_fields or {}).items() if col in columns
        }
        return QueueCapabilities(
            id_field=f.id_field,
            signature_field=f.signature_field,
            status_field=f.status_field,
            retry_field=retry_field,
            affinity_field=optional("server affinity", f.affinity_field),
            sent_by_field=optional("sent-by recording", f.sent_by_field),
            message_columns=message_columns,
            policy=retry_policy(retry_field is not None, retry_times),
        )

    # -------------------------------------------------------------------------
    # Claim / fetch / persist
    # -------------------------------------------------------------------------

    def empty_signature_sql(self) -> str:
        return EMPTY_SIGNATURE_SQL.format(signature=self._q(self.fields.signature_field))

    async def limited_update(
        self, values: dict[str, Any], where: str, params: dict[str, Any], *, limit: int
    ) -> int:
        """Atomically update at most ``limit`` rows matching ``where``."""
        return await self.adapter.limited_update(
            self.name, values, where, params, limit=limit, key=self.fields.id_field
        )

    async def fetch_signed(
        self, caps: QueueCapabilities, signature: str, limit: int
    ) -> list[Job]:
        """Fetch up to ``limit`` active rows owned by ``signature``, ordered by id."""
        roles = [caps.id_field, caps.signature_field, caps.status_field]
        roles += [name for name in (caps.retry_field, caps.affinity_field) if name]
        selected = list(dict.fromkeys(roles + list(caps.message_columns)))

        query = f"""
            SELECT {", ".join(self._q(col) for col in selected)}
            FROM {self.sql_name}
            WHERE {self._q(caps.signature_field)} = :signature
              AND {ACTIVE_STATUS_SQL.format(status=self._q(caps.status_field))}
            ORDER BY {self._q(caps.id_field)}
            LIMIT :limit
        """
        rows = await self.fetch_all(query, {"signature": signature, "limit": int(limit)})
        return [self._to_job(caps, row) for row in rows]

    def _to_job(self, caps: QueueCapabilities, row: dict[str, Any]) -> Job:
        retry_count = row.get(caps.retry_field) if caps.retry_field else None
        assigned = row.get(caps.affinity_field) if caps.affinity_field else None
        return Job(
            id=row[caps.id_field],
            status=MailStatus.from_db(row[caps.status_field]),
            retry_count=int(retry_count or 0),
            signature=row[caps.signature_field],
            assigned_server=int(assigned) if assigned is not None else None,
            payload={col: row.get(col) for col in caps.message_columns},
        )

    async def save_status(
        self,
        caps: QueueCapabilities,
        job: Job,
        change: StatusChange,
        sent_by: int | None = None,
    ) -> int:
        """Persist the outcome of one send attempt in a single-row update.

        Only the status and retry columns are written, plus the sent-by
        column when available and ``sent_by`` is given.
        """
        values: dict[str, Any] = {caps.status_field: change.status.to_db()}
        if caps.retry_field and (
            change.retried or change.retry_count != job.retry_count
        ):
            values[caps.retry_field] = change.retry_count
        if caps.sent_by_field and sent_by is not None:
            values[caps.sent_by_field] = sent_by

        assignments = ", ".join(f"{self._q(col)} = :v_{i}" for i, col in enumerate(values))
        params = {f"v_{i}": value for i, value in enumerate(values.values())}
        params["job_id"] = job.id
        return await self.execute(
            f"UPDATE {self.sql_name} SET {assignments} WHERE {self._q(caps.id_field)} = :job_id",
            params,
        )

    # -------------------------------------------------------------------------
    # Test data and statistics
    # -------------------------------------------------------------------------

    async def insert_test_messages(
        self,
        count: int,
        from_template: str = "from_{seq}@example.com",
        to_template: str = "to_{seq}@example.com",
        *,
        batch_size: int = 500,
        progress: Callable[[int], None] | None = None,
    ) -> int:
        """Append ``count`` sample messages; ``{seq}`` is replaced by the row number."""
        query = f"""
            INSERT INTO {self.sql_name}
                ("to", "from", "reply_to", "from_name", "subject", "body")
            VALUES (:to, :from_addr, :from_addr, :from_addr, :subject, :body)
        """
        inserted = 0
        while inserted < count:
            chunk = range(inserted, min(inserted + batch_size, count))
            rows = []
            for seq in chunk:
                sender = from_template.replace("{seq}", str(seq))
                rows.append({
                    "to": to_template.replace("{seq}", str(seq)),
                    "from_addr": sender,
                    "subject": TEST_SUBJECT,
                    "body": TEST_BODY,
                })
            await self.adapter.execute_many(query, rows)
            inserted += len(rows)
            if progress:
                progress(len(rows))
        return inserted

    async def status_counts(self) -> dict[str, int]:
        """Count rows per status, plus the rows nobody has claimed yet.

        Stored values outside the known statuses are counted under ``other``.
        """
        status = self._q(self.fields.status_field)
        rows = await self.fetch_all(
            f"SELECT {status} AS status, COUNT(*) AS total FROM {self.sql_name} GROUP BY {status}"
        )
        counts = {st.value: 0 for st in MailStatus}
        counts["other"] = 0
        for row in rows:
            try:
                key = MailStatus.from_db(row["status"]).value
            except ValueError:
                key = "other"
            counts[key] += int(row["total"])

        unclaimed = await self.fetch_one(
            f"SELECT COUNT(*) AS total FROM {self.sql_name} WHERE {self.empty_signature_sql()}"
        )
        counts["unclaimed"] = int(unclaimed["total"]) if unclaimed else 0
        return counts
