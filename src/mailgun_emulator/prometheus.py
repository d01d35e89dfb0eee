# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the Mailgun emulator.

All metrics use the ``mge_`` prefix and, except for the storage gauge, are
labeled by sending ``domain``.

Metrics exposed:
    - ``mge_messages_accepted_total``: Requests validated and stored.
    - ``mge_messages_rejected_total``: Requests refused by validation.
    - ``mge_smtp_sent_total``: Per-recipient SMTP sends that succeeded.
    - ``mge_smtp_failed_total``: Per-recipient SMTP sends that failed.
    - ``mge_stored_messages``: Messages currently held in storage.

Example:
    Accessing metrics via the REST API::

        GET /metrics

    Returns Prometheus text format suitable for scraping.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MailMetrics:
    """Prometheus metrics collector for the emulator.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        accepted: Counter of accepted send requests.
        rejected: Counter of requests rejected by validation.
        smtp_sent: Counter of successful per-recipient sends.
        smtp_failed: Counter of failed per-recipient sends.
        stored: Gauge of messages in storage.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private one is
                created when omitted, so several apps can live in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.accepted = Counter(
            "mge_messages_accepted_total",
            "Total accepted messages",
            ["domain"],
            registry=self.registry,
        )
        self.rejected = Counter(
            "mge_messages_rejected_total",
            "Total messages rejected by validation",
            ["domain"],
            registry=self.registry,
        )
        self.smtp_sent = Counter(
            "mge_smtp_sent_total",
            "Total per-recipient SMTP sends",
            ["domain"],
            registry=self.registry,
        )
        self.smtp_failed = Counter(
            "mge_smtp_failed_total",
            "Total per-recipient SMTP failures",
            ["domain"],
            registry=self.registry,
        )
        self.stored = Gauge(
            "mge_stored_messages",
            "Messages currently in storage",
            registry=self.registry,
        )

    def inc_accepted(self, domain: str) -> None:
        self.accepted.labels(domain=domain or "default").inc()

    def inc_rejected(self, domain: str) -> None:
        self.rejected.labels(domain=domain or "default").inc()

    def inc_smtp_sent(self, domain: str, count: int = 1) -> None:
        """Add ``count`` successful sends for ``domain`` (no-op when zero)."""
        if count > 0:
            self.smtp_sent.labels(domain=domain or "default").inc(count)

    def inc_smtp_failed(self, domain: str, count: int = 1) -> None:
        if count > 0:
            self.smtp_failed.labels(domain=domain or "default").inc(count)

    def inc_stored(self) -> None:
        self.stored.inc()

    def set_stored(self, value: int) -> None:
        self.stored.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
