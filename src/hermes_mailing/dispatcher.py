# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch loop of one worker process.

The worker alternates two phases until nothing is left to claim:

1. Claim: sign up to ``sign_size`` unclaimed rows with this worker's token.
2. Send: page through the rows bearing the token whose status is still
   NEVER or RETRY, send each one, persist its new status and feed the
   sent counter to the throttle. RETRY rows come back in later pages until
   they succeed or exhaust their retries.

After each claim batch the ``max_sent`` ceiling is checked, so a run can
overshoot it by at most one batch.

Example:
    Running one worker::

        settings = load_settings("hermes.ini")
        dispatcher = await Dispatcher.from_settings(settings)
        try:
            report = await dispatcher.run()
        finally:
            await dispatcher.close()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .claimer import Claimer
from .logger import get_logger
from .models import DispatchSettings, MailStatus
from .sender import Sender, create_sender
from .signature import SignatureGenerator
from .sql import create_adapter
from .status import StatusChange, WithRetry, resolve_status
from .tables import MailQueueTable
from .throttle import Throttle, ThrottleState

if TYPE_CHECKING:
    from .prometheus import DispatchMetrics

logger = get_logger("Dispatcher")

STOP_EMPTY = "empty"
STOP_MAX_SENT = "max_sent"


@dataclass
class DispatchReport:
    """Counters of one dispatch run.

    ``sent`` counts send attempts, whatever their outcome: it is the
    counter compared with ``max_sent`` and fed to the throttle.
    """

    sent: int = 0
    claimed: int = 0
    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    pauses: int = 0
    stop_reason: str | None = None

    def record(self, change: StatusChange) -> None:
        self.sent += 1
        if change.status is MailStatus.SUCCEED:
            self.succeeded += 1
        elif change.status is MailStatus.FAILED:
            self.failed += 1
        else:
            self.retried += 1


class Dispatcher:
    """Claims, sends and throttles queued messages for one worker.

    Attributes:
        claimer: Signs batches of rows.
        table: Queue table manager, shared with the claimer.
        caps: Column roles of the queue table.
        sender: Delivers single messages.
        throttle: Applies spam rules to the sent counter.
        signer: Produces claim tokens.
    """

    def __init__(
        self,
        claimer: Claimer,
        sender: Sender,
        throttle: Throttle,
        signer: SignatureGenerator,
        *,
        server_id: int = 0,
        max_sent: int | None = None,
        sign_size: int = 100,
        page_size: int = 50,
        sign_unassigned: bool = True,
        renew_signature: bool = False,
        metrics: DispatchMetrics | None = None,
    ):
        self.claimer = claimer
        self.table = claimer.table
        self.caps = claimer.caps
        self.sender = sender
        self.throttle = throttle
        self.signer = signer
        self.server_id = server_id
        self.max_sent = max_sent
        self.sign_size = sign_size
        self.page_size = page_size
        self.sign_unassigned = sign_unassigned
        self.renew_signature = renew_signature
        self.metrics = metrics

    @classmethod
    async def from_settings(
        cls,
        settings: DispatchSettings,
        *,
        sender: Sender | None = None,
        metrics: DispatchMetrics | None = None,
        sleep=asyncio.sleep,
    ) -> Dispatcher:
        """Connect to the queue and wire every collaborator from ``settings``.

        Raises:
            SchemaError: If the queue table lacks a mandatory column.
        """
        adapter = create_adapter(settings.dsn, busy_timeout=settings.busy_timeout)
        await adapter.connect()
        try:
            table = MailQueueTable(adapter, settings.table, settings.fields)
            caps = await table.resolve_capabilities(settings.retry_times, settings.message_fields)
        except BaseException:
            await adapter.close()
            raise

        if settings.retry_times > 0 and not isinstance(caps.policy, WithRetry):
            logger.warning(
                "retry_times=%d ignored: queue table has no retry column", settings.retry_times
            )
        if sender is None:
            sender = create_sender(settings, caps.message_columns)
        throttle = Throttle.from_rules(
            settings.spam_rules,
            lite=settings.lite_throttle,
            dry_run=settings.dry_run_throttle,
            sleep=sleep,
            metrics=metrics,
        )
        return cls(
            Claimer(table, caps),
            sender,
            throttle,
            SignatureGenerator(settings.server_id),
            server_id=settings.server_id,
            max_sent=settings.max_sent,
            sign_size=settings.sign_size,
            page_size=settings.page_size,
            sign_unassigned=settings.sign_unassigned,
            renew_signature=settings.renew_signature,
            metrics=metrics,
        )

    async def close(self) -> None:
        await self.sender.close()
        await self.table.adapter.close()

    async def run(self) -> DispatchReport:
        """Process the queue until nothing is claimable or ``max_sent`` is reached."""
        report = DispatchReport()
        state = self.throttle.initial_state()
        logger.info("Emailing process (server id: %d) started.", self.server_id)
        try:
            while True:
                signature = self.signer.get_signature(renew=self.renew_signature)
                batch = await self.claimer.claim(
                    signature,
                    self.sign_size,
                    server_id=self.server_id,
                    include_unassigned=self.sign_unassigned,
                )
                if batch.empty:
                    report.stop_reason = STOP_EMPTY
                    break

                report.claimed += batch.claimed
                report.batches += 1
                if self.metrics is not None:
                    self.metrics.inc_claimed(batch.claimed)
                logger.info("Signed %d entries with signature: %s.", batch.claimed, signature)

                state = await self._send_signed(signature, report, state)
                logger.info("%d emails processed by signature: %s.", batch.claimed, signature)

                if self.max_sent is not None and report.sent >= self.max_sent:
                    logger.info("Max sent limit (%d) reached, shutting down.", self.max_sent)
                    report.stop_reason = STOP_MAX_SENT
                    break
        finally:
            logger.info("Emailing process (server id: %d) stopped.", self.server_id)
        return report

    async def _send_signed(
        self, signature: str, report: DispatchReport, state: ThrottleState
    ) -> ThrottleState:
        while jobs := await self.table.fetch_signed(self.caps, signature, self.page_size):
            for job in jobs:
                sent = await self.sender.send(job)
                change = resolve_status(job.status, job.retry_count, self.caps.policy, sent)
                await self.table.save_status(self.caps, job, change, sent_by=self.server_id)
                report.record(change)
                logger.debug(
                    "Message %s: %s -> %s (retries: %d)",
                    job.id,
                    job.status.value,
                    change.status.value,
                    change.retry_count,
                )
                if self.metrics is not None:
                    self.metrics.inc_sent(change.status.value)
                    self.metrics.set_sent_count(report.sent)

                state, paused = await self.throttle.apply(state, report.sent)
                if paused:
                    report.pauses += 1
        return state
