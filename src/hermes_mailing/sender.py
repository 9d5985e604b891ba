# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Message transport for the dispatcher.

The dispatcher only needs a boolean per send attempt. Two senders provide
it:

- :class:`SmtpSender` builds an RFC 5322 message from the row and delivers
  it with aiosmtplib through a :class:`SMTPPool`.
- :class:`SimulatedSender` sends nothing and returns a seeded random
  outcome, for test runs against a real queue.

The implementation is chosen once by :func:`create_sender`.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Mapping
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Protocol

import aiosmtplib

from .logger import get_logger
from .models import DEFAULT_MESSAGE_FIELDS, DispatchSettings, Job, SmtpSettings
from .smtp_pool import SMTPPool

logger = get_logger("Sender")

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}


class MessageAssemblyError(ValueError):
    """A row cannot be turned into a deliverable message."""


class Sender(Protocol):
    """Delivers one queued message and reports whether it was accepted."""

    async def send(self, job: Job) -> bool: ...

    async def close(self) -> None: ...


def _format_addresses(value: Any) -> str | None:
    if not value:
        return None
    if isinstance(value, str):
        items = [part.strip() for part in value.replace(";", ",").split(",") if part.strip()]
        return ", ".join(items) if items else None
    if isinstance(value, (list, tuple, set)):
        items = [str(addr).strip() for addr in value if addr]
        return ", ".join(items) if items else None
    return str(value)


def _is_true(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def message_attributes(payload: Mapping[str, Any], field_map: Mapping[str, str]) -> dict[str, Any]:
    """Rename row columns to message attributes; NULL columns are left out."""
    return {
        attr: payload[col]
        for col, attr in field_map.items()
        if col in payload and payload[col] is not None
    }


def build_email(data: Mapping[str, Any]) -> tuple[EmailMessage, str]:
    """Build an EmailMessage from message attributes.

    Args:
        data: Attributes such as from, from_name, to, cc, bcc, reply_to,
            subject, body, is_html and charset.

    Returns:
        Tuple of (EmailMessage, envelope_sender_address).

    Raises:
        MessageAssemblyError: If the sender or the recipients are missing,
            a header value holds a line break or the charset is unknown.
    """
    sender = str(data.get("from") or "").strip()
    if not sender:
        raise MessageAssemblyError("missing sender address")
    to_value = _format_addresses(data.get("to"))
    if not to_value:
        raise MessageAssemblyError("missing recipient address")

    msg = EmailMessage()
    subtype = "html" if _is_true(data.get("is_html", False)) else "plain"
    try:
        from_name = data.get("from_name")
        msg["From"] = formataddr((str(from_name), sender)) if from_name else sender
        msg["To"] = to_value
        msg["Subject"] = data.get("subject") or ""
        if cc_value := _format_addresses(data.get("cc")):
            msg["Cc"] = cc_value
        if bcc_value := _format_addresses(data.get("bcc")):
            msg["Bcc"] = bcc_value
        if reply_to := data.get("reply_to"):
            msg["Reply-To"] = reply_to
        msg.set_content(
            str(data.get("body") or ""), subtype=subtype, charset=data.get("charset") or "utf-8"
        )
    except (ValueError, LookupError) as exc:
        # header injection (CR/LF in a value) or unknown charset
        raise MessageAssemblyError(str(exc)) from exc
    return msg, sender


class SmtpSender:
    """Sends messages through an SMTP server.

    Transport errors never escape :meth:`send`: they are logged and reported
    as a failed attempt, leaving the retry decision to the status resolver.
    """

    def __init__(
        self,
        smtp: SmtpSettings,
        field_map: Mapping[str, str] | None = None,
        pool: SMTPPool | None = None,
    ):
        self.smtp = smtp
        self.field_map = dict(field_map if field_map is not None else DEFAULT_MESSAGE_FIELDS)
        self.pool = pool or SMTPPool()

    async def send(self, job: Job) -> bool:
        try:
            msg, envelope_from = build_email(message_attributes(job.payload, self.field_map))
        except MessageAssemblyError as exc:
            logger.warning("Message %s not sendable: %s", job.id, exc)
            return False

        smtp = None
        try:
            smtp = await self.pool.get_connection(
                self.smtp.host,
                self.smtp.port,
                self.smtp.user,
                self.smtp.password,
                use_tls=self.smtp.tls,
            )
            await asyncio.wait_for(
                smtp.send_message(msg, sender=envelope_from), timeout=self.smtp.timeout
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to send message %s: %s", job.id, exc or type(exc).__name__)
            if smtp is not None:
                await self.pool.discard(smtp)
            return False
        return True

    async def close(self) -> None:
        await self.pool.close()


class SimulatedSender:
    """Pretends to send: each attempt succeeds with probability ``success_rate``."""

    def __init__(self, seed: int | None = None, success_rate: float = 0.5):
        self.random = random.Random(seed)
        self.success_rate = success_rate

    async def send(self, job: Job) -> bool:
        sent = self.random.random() < self.success_rate
        logger.debug("Simulated send of message %s: %s", job.id, "sent" if sent else "failed")
        return sent

    async def close(self) -> None:
        pass


def create_sender(
    settings: DispatchSettings, field_map: Mapping[str, str] | None = None
) -> Sender:
    """Pick the sender for this run: simulated in test mode, SMTP otherwise."""
    if settings.test_mode:
        return SimulatedSender(seed=settings.test_seed)
    return SmtpSender(
        settings.smtp,
        field_map if field_map is not None else settings.message_fields,
    )
