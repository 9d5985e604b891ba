# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Reusable SMTP connections for a sequential send loop.

A worker sends one message at a time through the same SMTP server, so the
pool keeps one open connection per server/credentials pair and hands it
back as long as it is younger than ``ttl`` and answers NOOP.

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        smtp = await pool.get_connection("smtp.example.com", 465, user, password, use_tls=True)
        await smtp.send_message(message)
        await pool.close()
"""

from __future__ import annotations

import asyncio
import time

import aiosmtplib

from .logger import get_logger

logger = get_logger("SMTPPool")

ConnectionKey = tuple[str, int, str | None, bool]

CONNECT_TIMEOUT = 15.0
NOOP_TIMEOUT = 5.0


class SMTPPool:
    """SMTP connection cache with TTL expiry and NOOP health checks.

    Attributes:
        ttl: Maximum age in seconds of a pooled connection.
        pool: Open connections with their last use time, by server key.
    """

    def __init__(self, ttl: int = 300):
        self.ttl = ttl
        self.pool: dict[ConnectionKey, tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(
        self, host: str, port: int, user: str | None, password: str | None, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        Port 465 with TLS uses implicit TLS, other TLS ports use STARTTLS.

        Raises:
            asyncio.TimeoutError: If connecting takes longer than 15 seconds.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        implicit_tls = use_tls and port == 465
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=implicit_tls,
            start_tls=use_tls and not implicit_tls,
            timeout=10.0,
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=CONNECT_TIMEOUT)
        logger.debug("Connected to SMTP server %s:%d", host, port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return True when the server answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=NOOP_TIMEOUT)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False
        return code == 250

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Return a healthy connection to ``host:port``, opening one if needed."""
        key: ConnectionKey = (host, port, user, use_tls)

        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                return smtp
            await self._quit(smtp)

        smtp = await self._connect(host, port, user, password, use_tls)
        async with self.lock:
            self.pool[key] = (smtp, time.time())
        return smtp

    async def discard(self, smtp: aiosmtplib.SMTP) -> None:
        """Drop ``smtp`` from the pool after a transport failure."""
        async with self.lock:
            keys = [key for key, (conn, _) in self.pool.items() if conn is smtp]
            for key in keys:
                self.pool.pop(key)
        await self._quit(smtp)

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._quit(smtp)
