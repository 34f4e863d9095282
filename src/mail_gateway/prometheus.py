# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail gateway.

All metrics use the ``mgw_`` prefix.

Metrics exposed:
    - ``mgw_sent_total``: Successful dispatches per provider.
    - ``mgw_errors_total``: Failed dispatches per provider.
    - ``mgw_rate_limited_total``: Rejected requests per endpoint class.
    - ``mgw_token_refresh_total``: Token exchanges per provider and outcome.
    - ``mgw_log_write_failures_total``: Request log writes that failed.
    - ``mgw_log_queue_depth``: Request records waiting to be written.

Example:
    Accessing metrics via the REST API::

        GET /metrics

    Returns Prometheus text format suitable for scraping.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class GatewayMetrics:
    """Prometheus metrics collector for the gateway.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of successful dispatches.
        errors: Counter of failed dispatches.
        rate_limited: Counter of rate-limit rejections.
        token_refresh: Counter of token exchanges.
        log_failures: Counter of request log write failures.
        log_queue_depth: Gauge of pending request records.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private one is
                created when omitted so several gateways (or tests) never
                collide on metric names.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "mgw_sent_total",
            "Total emails dispatched successfully",
            ["provider"],
            registry=self.registry,
        )
        self.errors = Counter(
            "mgw_errors_total",
            "Total failed dispatches",
            ["provider"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "mgw_rate_limited_total",
            "Total requests rejected by the rate limiter",
            ["endpoint_class"],
            registry=self.registry,
        )
        self.token_refresh = Counter(
            "mgw_token_refresh_total",
            "Total provider token exchanges",
            ["provider", "outcome"],
            registry=self.registry,
        )
        self.log_failures = Counter(
            "mgw_log_write_failures_total",
            "Total request log writes that failed",
            registry=self.registry,
        )
        self.log_queue_depth = Gauge(
            "mgw_log_queue_depth",
            "Request records waiting to be persisted",
            registry=self.registry,
        )

    def inc_sent(self, provider: str) -> None:
        self.sent.labels(provider=provider or "unknown").inc()

    def inc_error(self, provider: str) -> None:
        self.errors.labels(provider=provider or "unknown").inc()

    def inc_rate_limited(self, endpoint_class: str) -> None:
        self.rate_limited.labels(endpoint_class=endpoint_class).inc()

    def inc_token_refresh(self, provider: str, ok: bool) -> None:
        self.token_refresh.labels(provider=provider, outcome="ok" if ok else "error").inc()

    def inc_log_failure(self) -> None:
        self.log_failures.inc()

    def set_log_queue_depth(self, value: int) -> None:
        self.log_queue_depth.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
