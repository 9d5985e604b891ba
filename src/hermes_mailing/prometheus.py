# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring a dispatch worker.

All metrics use the ``hermes_`` prefix.

Metrics exposed:
    - ``hermes_claimed_total``: Counter of rows signed by this worker.
    - ``hermes_sent_total``: Counter of send attempts by resulting status.
    - ``hermes_throttle_pauses_total``: Counter of spam rule pauses.
    - ``hermes_throttle_seconds_total``: Counter of seconds spent paused.
    - ``hermes_sent_count``: Gauge of the dispatcher's sent counter.

Example:
    Serving metrics during a run::

        from prometheus_client import start_http_server

        metrics = DispatchMetrics()
        start_http_server(9108, registry=metrics.registry)
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Prometheus metrics collector for one dispatch worker.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        claimed: Counter of claimed rows.
        sent: Counter of send attempts labeled by resolved status.
        throttle_pauses: Counter of throttle pauses.
        throttle_seconds: Counter of throttle pause seconds.
        sent_count: Gauge mirroring the sent counter.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.claimed = Counter(
            "hermes_claimed_total",
            "Total rows claimed",
            registry=self.registry,
        )
        self.sent = Counter(
            "hermes_sent_total",
            "Total send attempts by resulting status",
            ["status"],
            registry=self.registry,
        )
        self.throttle_pauses = Counter(
            "hermes_throttle_pauses_total",
            "Total throttle pauses",
            registry=self.registry,
        )
        self.throttle_seconds = Counter(
            "hermes_throttle_seconds_total",
            "Total seconds paused by spam rules",
            registry=self.registry,
        )
        self.sent_count = Gauge(
            "hermes_sent_count",
            "Messages processed in the current run",
            registry=self.registry,
        )

    def inc_claimed(self, count: int) -> None:
        if count > 0:
            self.claimed.inc(count)

    def inc_sent(self, status: str) -> None:
        """Count one send attempt that left the row in ``status``."""
        self.sent.labels(status=status).inc()

    def record_pause(self, seconds: float) -> None:
        self.throttle_pauses.inc()
        if seconds > 0:
            self.throttle_seconds.inc(seconds)

    def set_sent_count(self, value: int) -> None:
        self.sent_count.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
