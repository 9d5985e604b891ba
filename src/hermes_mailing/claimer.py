# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Atomic claiming ("signing") of unclaimed queue rows.

A worker owns a row once its signature is written in the row's signature
column. Writing it happens in one conditional update bounded by the claim
size, so two workers racing on the same table never sign the same row:

    UPDATE queue SET signature = :token
    WHERE id IN (SELECT id FROM queue WHERE <unclaimed> LIMIT :k)
      AND <unclaimed>

The database adapter provides the locking (``BEGIN IMMEDIATE`` on SQLite,
``FOR UPDATE SKIP LOCKED`` on PostgreSQL).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .logger import get_logger
from .models import ClaimBatch
from .sql import quote_identifier

if TYPE_CHECKING:
    from .tables import MailQueueTable, QueueCapabilities

logger = get_logger("Claimer")


class Claimer:
    """Signs batches of unclaimed rows for one worker.

    Attributes:
        table: Queue table manager.
        caps: Column roles resolved against the table.
    """

    def __init__(self, table: MailQueueTable, caps: QueueCapabilities):
        self.table = table
        self.caps = caps

    def claim_condition(
        self, server_id: int, include_unassigned: bool
    ) -> tuple[str, dict[str, Any]] | None:
        """Build the WHERE clause selecting claimable rows.

        Returns None when nothing can be claimed with this configuration.
        """
        unclaimed = self.table.empty_signature_sql()
        if not self.caps.has_affinity:
            if not include_unassigned:
                logger.warning(
                    "Signing of unassigned messages is disabled but the queue has no "
                    "assigned-server column: nothing can be claimed"
                )
                return None
            return unclaimed, {}

        affinity = quote_identifier(self.caps.affinity_field)
        if include_unassigned:
            owner = f"({affinity} = :server_id OR {affinity} IS NULL)"
        else:
            owner = f"{affinity} = :server_id"
        return f"{unclaimed} AND {owner}", {"server_id": server_id}

    async def claim(
        self,
        signature: str,
        limit: int,
        *,
        server_id: int,
        include_unassigned: bool = True,
    ) -> ClaimBatch:
        """Write ``signature`` on at most ``limit`` claimable rows.

        Args:
            signature: Claim token of this worker.
            limit: Maximum number of rows to sign.
            server_id: This worker's server id, matched against the affinity column.
            include_unassigned: Also sign rows with no assigned server.

        Returns:
            ClaimBatch with the number of rows actually signed.
        """
        condition = self.claim_condition(server_id, include_unassigned)
        if condition is None or limit <= 0:
            return ClaimBatch(requested=max(limit, 0), claimed=0, signature=signature)

        where, params = condition
        claimed = await self.table.limited_update(
            {self.caps.signature_field: signature}, where, params, limit=limit
        )
        logger.debug("Claimed %d of %d rows with signature %s", claimed, limit, signature)
        return ClaimBatch(requested=limit, claimed=claimed, signature=signature)
