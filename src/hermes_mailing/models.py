# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models for the mail queue dispatcher.

This module defines the values that flow through the dispatcher and the
pydantic models used to validate its configuration.

Models:
    - MailStatus: Per-row delivery status
    - Job: One queued message as read from storage
    - ClaimBatch: Result of one claim call
    - FieldMapping: Roles of the queue table columns
    - SmtpSettings: Transport configuration
    - DispatchSettings: Complete worker configuration
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .sql.base import quote_identifier


class MailStatus(str, Enum):
    """Delivery status of a queued message.

    NEVER is the implicit initial state and is stored as NULL. SUCCEED and
    FAILED are absorbing: rows in those states are never fetched again.
    """

    NEVER = "never"
    RETRY = "retry"
    SUCCEED = "succeed"
    FAILED = "failed"

    @classmethod
    def from_db(cls, value: Any) -> MailStatus:
        """Read a stored status value; NULL and empty string mean NEVER."""
        if value is None or value == "":
            return cls.NEVER
        return cls(str(value).strip().lower())

    def to_db(self) -> str | None:
        """Return the stored representation (NULL for NEVER)."""
        return None if self is MailStatus.NEVER else self.value

    @property
    def is_absorbing(self) -> bool:
        return self in (MailStatus.SUCCEED, MailStatus.FAILED)


@dataclass(frozen=True)
class Job:
    """One queued message.

    Attributes:
        id: Primary key of the row.
        status: Current delivery status.
        retry_count: Retries performed so far (0 when not tracked).
        signature: Claim token of the owning worker, None when unclaimed.
        assigned_server: Server affinity hint, None means any server.
        payload: Message columns, opaque to the dispatcher.
    """

    id: Any
    status: MailStatus = MailStatus.NEVER
    retry_count: int = 0
    signature: str | None = None
    assigned_server: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClaimBatch:
    """Result of one claim call: ``claimed`` of ``requested`` rows got ``signature``."""

    requested: int
    claimed: int
    signature: str

    @property
    def empty(self) -> bool:
        return self.claimed == 0


# Queue table column -> message attribute understood by build_email()
MESSAGE_ATTRIBUTES = frozenset(
    {"from", "from_name", "to", "reply_to", "cc", "bcc", "subject", "body", "is_html", "charset"}
)

DEFAULT_MESSAGE_FIELDS: dict[str, str] = {
    "from": "from",
    "from_name": "from_name",
    "to": "to",
    "reply_to": "reply_to",
    "cc": "cc",
    "bcc": "bcc",
    "subject": "subject",
    "body": "body",
    "is_html": "is_html",
    "charset": "charset",
}


def _identifier(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    quote_identifier(value)
    return value


class FieldMapping(BaseModel):
    """Names of the queue table columns playing each dispatcher role.

    Attributes:
        id_field: Unique key column.
        signature_field: Claim token column (mandatory).
        status_field: Delivery status column (mandatory).
        retry_field: Retry counter column; None disables retry tracking.
        affinity_field: Assigned server column; None disables affinity.
        sent_by_field: Column receiving the server id after each send; None disables it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id_field: str = "id"
    signature_field: str = "signature"
    status_field: str = "status"
    retry_field: str | None = "retry_times"
    affinity_field: str | None = "assigned_to_svr"
    sent_by_field: str | None = None

    @field_validator("id_field", "signature_field", "status_field")
    @classmethod
    def required_identifier(cls, v: str) -> str:
        """Mandatory columns must be valid, non-empty identifiers."""
        name = _identifier(v)
        if name is None:
            raise ValueError("column name is required")
        return name

    @field_validator("retry_field", "affinity_field", "sent_by_field")
    @classmethod
    def optional_identifier(cls, v: str | None) -> str | None:
        """Optional columns accept an empty value to disable the role."""
        return _identifier(v)


class SmtpSettings(BaseModel):
    """SMTP transport configuration.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        user: Username for authentication (optional).
        password: Password for authentication (optional).
        use_tls: Direct TLS; None means "TLS when port is 465".
        timeout: Seconds allowed for a single send.
    """

    model_config = ConfigDict(extra="forbid")

    host: str = "localhost"
    port: Annotated[int, Field(ge=1, le=65535)] = 25
    user: str | None = None
    password: str | None = None
    use_tls: bool | None = None
    timeout: Annotated[float, Field(gt=0)] = 30.0

    @property
    def tls(self) -> bool:
        if self.use_tls is None:
            return self.port == 465
        return self.use_tls


class DispatchSettings(BaseModel):
    """Complete configuration of one worker process.

    The dispatch options mirror the ``run-queue`` command options.
    """

    model_config = ConfigDict(extra="forbid")

    dsn: str = "/data/hermes_mail.db"
    table: str = "hermes_mail"
    busy_timeout: Annotated[float, Field(gt=0)] = 30.0
    fields: FieldMapping = Field(default_factory=FieldMapping)
    message_fields: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MESSAGE_FIELDS))

    test_mode: bool = False
    test_seed: int | None = None
    server_id: Annotated[int, Field(ge=0)] = 0
    max_sent: Annotated[int | None, Field(ge=1)] = None
    sign_size: Annotated[int, Field(ge=1)] = 100
    page_size: Annotated[int, Field(ge=1)] = 50
    retry_times: Annotated[int, Field(ge=0)] = 0
    sign_unassigned: bool = True
    renew_signature: bool = False
    spam_rules: dict[int, float] = Field(default_factory=dict)
    lite_throttle: bool = False
    dry_run_throttle: bool = False

    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    log_level: str = "INFO"
    metrics_port: Annotated[int | None, Field(ge=1, le=65535)] = None

    @field_validator("max_sent", mode="before")
    @classmethod
    def zero_means_unlimited(cls, v: Any) -> Any:
        """A ceiling of 0 disables the limit."""
        if isinstance(v, str):
            v = v.strip()
        if v == 0 or v == "0":
            return None
        return v

    @field_validator("table")
    @classmethod
    def table_identifier(cls, v: str) -> str:
        quote_identifier(v)
        return v

    @field_validator("message_fields")
    @classmethod
    def known_message_attributes(cls, v: dict[str, str]) -> dict[str, str]:
        """Every mapped column must be an identifier and target a known attribute."""
        for column, attribute in v.items():
            quote_identifier(column)
            if attribute not in MESSAGE_ATTRIBUTES:
                raise ValueError(
                    f"unknown message attribute '{attribute}' for column '{column}'"
                )
        return v

    @field_validator("spam_rules")
    @classmethod
    def non_negative_pauses(cls, v: dict[int, float]) -> dict[int, float]:
        for threshold, pause in v.items():
            if pause < 0:
                raise ValueError(f"pause for threshold {threshold} must be >= 0")
        return v
