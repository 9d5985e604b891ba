# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-message status state machine.

After every send attempt the dispatcher asks :func:`resolve_status` for the
row's next status and retry count. The function is pure: it never touches
storage and never raises for a valid NEVER/RETRY input.

Retry tracking is described by a tagged policy value rather than by
checking whether a column happens to exist: :class:`WithRetry` carries the
maximum retry count, :class:`WithoutRetry` means a single attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import MailStatus


@dataclass(frozen=True)
class WithRetry:
    """Failed sends are retried until ``limit`` retries have been made."""

    limit: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("WithRetry limit must be >= 1")


@dataclass(frozen=True)
class WithoutRetry:
    """Every message gets exactly one attempt."""


RetryPolicy = WithRetry | WithoutRetry


def retry_policy(has_retry_field: bool, retry_times: int) -> RetryPolicy:
    """Pick the policy: retries need both the column and a positive limit."""
    if has_retry_field and retry_times > 0:
        return WithRetry(retry_times)
    return WithoutRetry()


@dataclass(frozen=True)
class StatusChange:
    """New status and retry count to persist for one row."""

    status: MailStatus
    retry_count: int

    @property
    def retried(self) -> bool:
        return self.status is MailStatus.RETRY


def resolve_status(
    status: MailStatus, retry_count: int, policy: RetryPolicy, sent: bool
) -> StatusChange:
    """Compute the status a row moves to after a send attempt.

    Args:
        status: Current status, NEVER or RETRY.
        retry_count: Retries made so far.
        policy: Retry policy in effect for this run.
        sent: Outcome of the send attempt.

    Returns:
        The resulting StatusChange.

    Raises:
        ValueError: If ``status`` is SUCCEED or FAILED.
    """
    if status.is_absorbing:
        raise ValueError(f"Cannot resolve a message already in status {status.value}")

    retry_count = retry_count or 0

    if isinstance(policy, WithoutRetry):
        # Also covers RETRY rows left over from a run with retries enabled
        return StatusChange(MailStatus.SUCCEED if sent else MailStatus.FAILED, retry_count)

    if status is MailStatus.NEVER:
        if sent:
            return StatusChange(MailStatus.SUCCEED, retry_count)
        return StatusChange(MailStatus.RETRY, 0)

    retry_count += 1
    if sent:
        return StatusChange(MailStatus.SUCCEED, retry_count)
    if retry_count < policy.limit:
        return StatusChange(MailStatus.RETRY, retry_count)
    return StatusChange(MailStatus.FAILED, retry_count)


__all__ = [
    "RetryPolicy",
    "StatusChange",
    "WithRetry",
    "WithoutRetry",
    "resolve_status",
    "retry_policy",
]
