# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the per-message status state machine."""

import pytest

from hermes_mailing.models import MailStatus
from hermes_mailing.status import (
    StatusChange,
    WithRetry,
    WithoutRetry,
    resolve_status,
    retry_policy,
)

NEVER = MailStatus.NEVER
RETRY = MailStatus.RETRY
SUCCEED = MailStatus.SUCCEED
FAILED = MailStatus.FAILED


@pytest.mark.parametrize(
    "status, count, policy, sent, expected",
    [
        (NEVER, 0, WithoutRetry(), True, StatusChange(SUCCEED, 0)),
        (NEVER, 0, WithoutRetry(), False, StatusChange(FAILED, 0)),
        (NEVER, 0, WithRetry(3), True, StatusChange(SUCCEED, 0)),
        (NEVER, 0, WithRetry(3), False, StatusChange(RETRY, 0)),
        (RETRY, 0, WithRetry(3), True, StatusChange(SUCCEED, 1)),
        (RETRY, 0, WithRetry(3), False, StatusChange(RETRY, 1)),
        (RETRY, 1, WithRetry(3), False, StatusChange(RETRY, 2)),
        (RETRY, 2, WithRetry(3), False, StatusChange(FAILED, 3)),
        (RETRY, 2, WithRetry(3), True, StatusChange(SUCCEED, 3)),
    ],
)
def test_transition_table(status, count, policy, sent, expected):
    assert resolve_status(status, count, policy, sent) == expected


def test_first_failure_resets_stale_count():
    assert resolve_status(NEVER, 7, WithRetry(2), False) == StatusChange(RETRY, 0)


def test_retry_row_without_retry_policy_gets_single_attempt():
    assert resolve_status(RETRY, 1, WithoutRetry(), False) == StatusChange(FAILED, 1)
    assert resolve_status(RETRY, 1, WithoutRetry(), True) == StatusChange(SUCCEED, 1)


@pytest.mark.parametrize("status", [SUCCEED, FAILED])
def test_absorbing_status_rejected(status):
    with pytest.raises(ValueError):
        resolve_status(status, 0, WithRetry(3), True)


def test_none_retry_count_is_zero():
    assert resolve_status(RETRY, None, WithRetry(3), False) == StatusChange(RETRY, 1)


@pytest.mark.parametrize("limit", [1, 2, 5])
def test_retry_exhaustion_takes_limit_plus_one_attempts(limit):
    status, count, attempts = NEVER, 0, 0
    while status in (NEVER, RETRY):
        change = resolve_status(status, count, WithRetry(limit), False)
        status, count = change.status, change.retry_count
        attempts += 1
    assert status is FAILED
    assert attempts == limit + 1
    assert count == limit


def test_retry_policy_selection():
    assert retry_policy(True, 3) == WithRetry(3)
    assert retry_policy(True, 0) == WithoutRetry()
    assert retry_policy(False, 3) == WithoutRetry()


def test_with_retry_requires_positive_limit():
    with pytest.raises(ValueError):
        WithRetry(0)


def test_mail_status_storage_representation():
    assert MailStatus.from_db(None) is NEVER
    assert MailStatus.from_db("") is NEVER
    assert MailStatus.from_db("retry") is RETRY
    assert NEVER.to_db() is None
    assert FAILED.to_db() == "failed"
    assert SUCCEED.is_absorbing and not RETRY.is_absorbing
