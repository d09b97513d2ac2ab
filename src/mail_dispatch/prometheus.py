# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the dispatch pipeline.

All metrics use the ``bmd_`` prefix (budget mail dispatch).

Metrics exposed:
    - ``bmd_sent_total``: Counter of delivered emails per provider.
    - ``bmd_errors_total``: Counter of tasks that exhausted their retries.
    - ``bmd_retried_total``: Counter of failed attempts rescheduled for retry.
    - ``bmd_alerts_total``: Counter of admin alert tasks emitted.
    - ``bmd_pending_tasks``: Gauge of tasks currently in the queue.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MailMetrics:
    """Prometheus metrics collector for the worker pool.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter tracking delivered emails.
        errors: Counter tracking terminal failures.
        retried: Counter tracking rescheduled attempts.
        alerts: Counter tracking admin alerts.
        pending: Gauge showing current queue depth.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional CollectorRegistry. A private registry is
                created by default so that several pools can coexist.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "bmd_sent_total",
            "Total delivered emails",
            ["provider"],
            registry=self.registry,
        )
        self.errors = Counter(
            "bmd_errors_total",
            "Total tasks failed after max retries",
            ["provider"],
            registry=self.registry,
        )
        self.retried = Counter(
            "bmd_retried_total",
            "Total delivery attempts rescheduled",
            ["provider"],
            registry=self.registry,
        )
        self.alerts = Counter(
            "bmd_alerts_total",
            "Total admin failure alerts emitted",
            ["provider"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "bmd_pending_tasks",
            "Current tasks waiting in the queue",
            registry=self.registry,
        )

    def inc_sent(self, provider: str | None) -> None:
        self.sent.labels(provider=provider or "unknown").inc()

    def inc_error(self, provider: str | None) -> None:
        self.errors.labels(provider=provider or "unknown").inc()

    def inc_retried(self, provider: str | None) -> None:
        self.retried.labels(provider=provider or "unknown").inc()

    def inc_alert(self, provider: str | None) -> None:
        self.alerts.labels(provider=provider or "unknown").inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
