"""Metrics for the admission workflow engine: Prometheus and/or OpenTelemetry.

Covers:
- transitions applied (automatic vs manual)
- manual transition rejections by kind
- lease contention
- notification deliveries, retries and permanent failures
- scheduler tick duration

Usage::

    metrics = SluiceMetrics(enable_prometheus=True)
    metrics.record_transition_applied("undergraduate-admissions", automatic=True)
    metrics.record_rejection("PermissionDenied")
    with metrics.time_tick():
        ...
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import metrics as otel_metrics
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from sluice import __version__


class _OtelCounterNoop:
    def add(self, amount: float = 1, attributes: dict | None = None) -> None:
        pass


class _OtelHistogramNoop:
    def record(self, amount: float, attributes: dict | None = None) -> None:
        pass


class SluiceMetrics:
    """Metrics collector; both backends can be enabled independently.

    Pass a fresh ``CollectorRegistry`` when several engines (or tests) live in
    one process, since Prometheus refuses duplicate metric names per registry.
    """

    def __init__(
        self,
        enable_prometheus: bool = True,
        enable_otel: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._prometheus_enabled = enable_prometheus
        self._otel_enabled = enable_otel
        self.registry = registry if registry is not None else REGISTRY

        if self._prometheus_enabled:
            self.transitions_applied = Counter(
                "sluice_transitions_applied_total",
                "Stage transitions committed to the state store",
                ["template_id", "trigger"],
                registry=self.registry,
            )
            self.rejections = Counter(
                "sluice_transition_rejections_total",
                "Manual transition requests rejected, by rejection kind",
                ["kind"],
                registry=self.registry,
            )
            self.lease_contention = Counter(
                "sluice_lease_contention_total",
                "Lease acquisitions that found the application already leased",
                ["component"],
                registry=self.registry,
            )
            self.notifications_delivered = Counter(
                "sluice_notifications_delivered_total",
                "Notifications delivered by the sender",
                ["template_key"],
                registry=self.registry,
            )
            self.notification_retries = Counter(
                "sluice_notification_retries_total",
                "Notification delivery attempts that failed and were retried",
                ["template_key"],
                registry=self.registry,
            )
            self.notifications_failed = Counter(
                "sluice_notifications_failed_total",
                "Notifications that permanently failed after all retries",
                ["template_key", "error_type"],
                registry=self.registry,
            )
            self.notifications_deduplicated = Counter(
                "sluice_notifications_deduplicated_total",
                "Dispatches dropped because the dedupe key was already claimed",
                ["template_key"],
                registry=self.registry,
            )
            self.tick_duration = Histogram(
                "sluice_scheduler_tick_seconds",
                "Duration of one automatic evaluation pass",
                registry=self.registry,
            )

        if self._otel_enabled:
            meter = otel_metrics.get_meter("sluice", __version__)
            self._otel_transitions = meter.create_counter(
                "sluice.transitions_applied",
                description="Stage transitions committed",
            )
            self._otel_rejections = meter.create_counter(
                "sluice.transition_rejections",
                description="Manual transition requests rejected",
            )
            self._otel_notifications_failed = meter.create_counter(
                "sluice.notifications_failed",
                description="Notifications that permanently failed",
            )
            self._otel_tick_duration = meter.create_histogram(
                "sluice.scheduler_tick",
                unit="s",
                description="Duration of one automatic evaluation pass",
            )
        else:
            self._otel_transitions = _OtelCounterNoop()
            self._otel_rejections = _OtelCounterNoop()
            self._otel_notifications_failed = _OtelCounterNoop()
            self._otel_tick_duration = _OtelHistogramNoop()

    def record_transition_applied(self, template_id: str, automatic: bool) -> None:
        trigger = "automatic" if automatic else "manual"
        if self._prometheus_enabled:
            self.transitions_applied.labels(template_id=template_id, trigger=trigger).inc()
        self._otel_transitions.add(
            1, attributes={"template_id": template_id, "trigger": trigger}
        )

    def record_rejection(self, kind: str) -> None:
        if self._prometheus_enabled:
            self.rejections.labels(kind=kind).inc()
        self._otel_rejections.add(1, attributes={"kind": kind})

    def record_lease_contention(self, component: str) -> None:
        if self._prometheus_enabled:
            self.lease_contention.labels(component=component).inc()

    def record_notification_delivered(self, template_key: str) -> None:
        if self._prometheus_enabled:
            self.notifications_delivered.labels(template_key=template_key).inc()

    def record_notification_retry(self, template_key: str) -> None:
        if self._prometheus_enabled:
            self.notification_retries.labels(template_key=template_key).inc()

    def record_notification_failed(self, template_key: str, error_type: str) -> None:
        if self._prometheus_enabled:
            self.notifications_failed.labels(
                template_key=template_key, error_type=error_type
            ).inc()
        self._otel_notifications_failed.add(
            1, attributes={"template_key": template_key, "error_type": error_type}
        )

    def record_notification_deduplicated(self, template_key: str) -> None:
        if self._prometheus_enabled:
            self.notifications_deduplicated.labels(template_key=template_key).inc()

    def observe_tick(self, duration_seconds: float) -> None:
        if self._prometheus_enabled:
            self.tick_duration.observe(duration_seconds)
        self._otel_tick_duration.record(duration_seconds)

    @contextmanager
    def time_tick(self) -> Generator[None, None, None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe_tick(time.perf_counter() - start)

    def sample(self, name: str, labels: dict[str, Any] | None = None) -> float | None:
        """Current value of a Prometheus sample (``None`` if never recorded)."""
        return self.registry.get_sample_value(name, labels or {})
