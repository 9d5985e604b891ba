# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Anti-spam throttling by cumulative send count.

A spam rule ``M -> N`` means: after the send that brings the counter to a
multiple of M, pause N seconds. When several thresholds divide the counter,
only the rule with the largest M fires.

Two strategies implement the same decision:

- :class:`LiteThrottleStrategy` scans the rules by descending threshold on
  every call. Cheap to reason about, costs one modulo per rule per send.
- :class:`FullThrottleStrategy` precomputes the next counter value that
  fires and compares a single integer on every call.

Both strategies are pure: ``plan()`` receives a :class:`ThrottleState` and
returns the next one. :class:`Throttle` adds logging, metrics and the
actual sleep on top of a strategy.

Example:
    Applying the throttle in a send loop::

        throttle = Throttle.from_rules({500: 10, 1000: 30})
        state = throttle.initial_state()
        for sent in range(1, total + 1):
            await send_one()
            state, paused = await throttle.apply(state, sent)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .logger import get_logger

if TYPE_CHECKING:
    from .prometheus import DispatchMetrics

logger = get_logger("Throttle")


@dataclass(frozen=True)
class ThrottlePause:
    """A pause decided for ``counter``: rule ``threshold`` asks for ``seconds``."""

    counter: int
    threshold: int
    seconds: float


@dataclass(frozen=True)
class ThrottleState:
    """Cached projection of the next firing counter value.

    ``next_threshold`` is None until the first call projects it.
    """

    next_threshold: int | None = None
    next_pause: float = 0.0


class ThrottleRules:
    """Validated spam rules, ordered by descending threshold.

    Thresholds <= 0 can never be reached by a positive counter and are
    dropped with a warning. Negative pauses are rejected.
    """

    def __init__(self, rules: Mapping[int, float] | None = None):
        cleaned: dict[int, float] = {}
        for threshold, pause in (rules or {}).items():
            threshold = int(threshold)
            pause = float(pause)
            if threshold <= 0:
                logger.warning("Ignoring spam rule with threshold %d: must be positive", threshold)
                continue
            if pause < 0:
                raise ValueError(f"Spam rule {threshold}: pause must be >= 0, got {pause}")
            cleaned[threshold] = pause
        self._rules = dict(sorted(cleaned.items(), reverse=True))

    def __bool__(self) -> bool:
        return bool(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ThrottleRules):
            return NotImplemented
        return self._rules == other._rules

    def __repr__(self) -> str:
        return f"ThrottleRules({self._rules!r})"

    def descending(self) -> list[tuple[int, float]]:
        """Return ``(threshold, pause)`` pairs, largest threshold first."""
        return list(self._rules.items())

    def as_dict(self) -> dict[int, float]:
        return dict(self._rules)


class ThrottleStrategy(Protocol):
    """Decision part of the throttle."""

    log_prefix: str

    def initial_state(self) -> ThrottleState: ...

    def plan(
        self, state: ThrottleState, counter: int
    ) -> tuple[ThrottleState, ThrottlePause | None]: ...


class LiteThrottleStrategy:
    """Check every rule against the counter, largest threshold first."""

    log_prefix = "[lite] "

    def __init__(self, rules: ThrottleRules):
        self.rules = rules

    def initial_state(self) -> ThrottleState:
        return ThrottleState()

    def plan(
        self, state: ThrottleState, counter: int
    ) -> tuple[ThrottleState, ThrottlePause | None]:
        if counter <= 0:
            return state, None
        for threshold, seconds in self.rules.descending():
            if counter % threshold == 0:
                return state, ThrottlePause(counter, threshold, seconds)
        return state, None


class FullThrottleStrategy:
    """Fire only when the counter reaches the cached next threshold."""

    log_prefix = ""

    def __init__(self, rules: ThrottleRules):
        self.rules = rules

    def initial_state(self) -> ThrottleState:
        return self.project(0)

    def project(self, counter: int) -> ThrottleState:
        """Compute the first firing counter value strictly after ``counter``."""
        if not self.rules:
            return ThrottleState()
        rules = self.rules.descending()
        next_threshold = min((counter // m + 1) * m for m, _ in rules)
        # The largest threshold dividing the next stop decides the pause
        next_pause = next(n for m, n in rules if next_threshold % m == 0)
        return ThrottleState(next_threshold, next_pause)

    def plan(
        self, state: ThrottleState, counter: int
    ) -> tuple[ThrottleState, ThrottlePause | None]:
        if counter <= 0 or not self.rules:
            return state, None
        if state.next_threshold is None or counter > state.next_threshold:
            state = self.project(counter - 1)
        if counter != state.next_threshold:
            return state, None
        threshold = next(m for m, _ in self.rules.descending() if counter % m == 0)
        return self.project(counter), ThrottlePause(counter, threshold, state.next_pause)


class Throttle:
    """Applies a throttle strategy: logs, records metrics and sleeps.

    Attributes:
        strategy: Decision strategy (lite or full).
        dry_run: When True, pauses are logged and reported but not slept.
    """

    def __init__(
        self,
        strategy: ThrottleStrategy,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        metrics: DispatchMetrics | None = None,
    ):
        self.strategy = strategy
        self.dry_run = dry_run
        self._sleep = sleep
        self.metrics = metrics

    @classmethod
    def from_rules(
        cls,
        rules: Mapping[int, float] | ThrottleRules | None,
        *,
        lite: bool = False,
        **kwargs,
    ) -> Throttle:
        """Build a throttle with the lite or full strategy over ``rules``."""
        if not isinstance(rules, ThrottleRules):
            rules = ThrottleRules(rules)
        strategy = LiteThrottleStrategy(rules) if lite else FullThrottleStrategy(rules)
        return cls(strategy, **kwargs)

    def initial_state(self) -> ThrottleState:
        return self.strategy.initial_state()

    async def apply(self, state: ThrottleState, counter: int) -> tuple[ThrottleState, bool]:
        """Pause if a rule fires for ``counter``.

        Returns:
            The next state and whether a pause happened (or, in dry-run
            mode, would have happened).
        """
        state, pause = self.strategy.plan(state, counter)
        if pause is None:
            return state, False

        logger.info(
            "%sApply spam rule: sleep %s secs after %d sent.",
            self.strategy.log_prefix,
            f"{pause.seconds:g}",
            pause.counter,
        )
        if self.metrics is not None:
            self.metrics.record_pause(pause.seconds)
        if not self.dry_run and pause.seconds > 0:
            await self._sleep(pause.seconds)
        return state, True


__all__ = [
    "FullThrottleStrategy",
    "LiteThrottleStrategy",
    "Throttle",
    "ThrottlePause",
    "ThrottleRules",
    "ThrottleState",
    "ThrottleStrategy",
]
