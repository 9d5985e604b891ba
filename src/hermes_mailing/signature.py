# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Claim token generation.

A signature identifies one claim batch of one worker. It is the md5 hex
digest of a nanosecond timestamp and the server id, so it fits the
``varchar(32)`` signature column.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable


class SignatureGenerator:
    """Produces claim tokens for one worker process.

    The token is cached: ``get_signature()`` keeps returning the same value
    until it is called with ``renew=True``. Successive tokens are always
    different because the timestamp is forced past the last one used.
    """

    def __init__(self, server_id: int = 0, clock: Callable[[], int] = time.time_ns):
        self.server_id = server_id
        self._clock = clock
        self._signature: str | None = None
        self._last_stamp = 0

    def _next_stamp(self) -> int:
        stamp = self._clock()
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def get_signature(self, renew: bool = False) -> str:
        """Return the current token, generating a new one when needed."""
        if renew or self._signature is None:
            seed = f"{self._next_stamp()}{self.server_id}"
            self._signature = hashlib.md5(seed.encode("ascii")).hexdigest()
        return self._signature

    @property
    def current(self) -> str | None:
        return self._signature
