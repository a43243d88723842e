"""Prometheus metrics for saga observability.

Metrics Defined:
- tenancy_saga_runs_total: Counter of finished runs by saga and result
  (completed, rolled_back, rolled_back_unclean)
- tenancy_saga_step_failures_total: Counter of step failures by saga and step
- tenancy_saga_compensation_failures_total: Counter of failed rollbacks by
  saga and step; any non-zero value needs an operator
- tenancy_saga_duration_seconds: Histogram of run duration by saga

The MetricsEventEmitter updates these from saga events. Metrics are
exposed at the `/metrics` endpoint in Prometheus text format.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.tenancy.events.emitter import EventEmitter
from src.tenancy.events.models import SagaEvent, SagaEventType


logger = logging.getLogger(__name__)


# Provisioning is a dozen remote calls; most runs finish well under 10s
DEFAULT_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class SagaMetrics:
    """Container for all saga Prometheus metrics.

    Supports custom registries so tests can create isolated instances.

    Example:
        >>> metrics = SagaMetrics(registry=CollectorRegistry())
        >>> metrics.record_run("provision_workspace", "completed", 0.4)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_total = Counter(
            "tenancy_saga_runs_total",
            "Total number of finished saga runs",
            labelnames=["saga", "result"],
            registry=self.registry,
        )

        self.step_failures_total = Counter(
            "tenancy_saga_step_failures_total",
            "Total number of failed saga steps",
            labelnames=["saga", "step"],
            registry=self.registry,
        )

        self.compensation_failures_total = Counter(
            "tenancy_saga_compensation_failures_total",
            "Total number of failed compensations (manual cleanup required)",
            labelnames=["saga", "step"],
            registry=self.registry,
        )

        self.duration_seconds = Histogram(
            "tenancy_saga_duration_seconds",
            "Saga run duration in seconds",
            labelnames=["saga"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

    def record_run(self, saga: str, result: str, duration_seconds: Optional[float]) -> None:
        self.runs_total.labels(saga=saga, result=result).inc()
        if duration_seconds is not None:
            self.duration_seconds.labels(saga=saga).observe(duration_seconds)

    def record_step_failure(self, saga: str, step: str) -> None:
        self.step_failures_total.labels(saga=saga, step=step).inc()

    def record_compensation_failure(self, saga: str, step: str) -> None:
        self.compensation_failures_total.labels(saga=saga, step=step).inc()


_default_metrics: Optional[SagaMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> SagaMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return SagaMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = SagaMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics from saga events."""

    def __init__(
        self,
        metrics: Optional[SagaMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> SagaMetrics:
        return self._metrics

    async def emit(self, event: SagaEvent) -> None:
        try:
            if event.event_type == SagaEventType.STEP_FAILED:
                self._metrics.record_step_failure(event.saga, event.step or "unknown")
            elif event.event_type == SagaEventType.COMPENSATION_FAILED:
                self._metrics.record_compensation_failure(
                    event.saga, event.step or "unknown"
                )
            elif event.event_type == SagaEventType.RUN_COMPLETED:
                self._metrics.record_run(
                    event.saga,
                    "completed",
                    event.details.get("duration_seconds"),
                )
            elif event.event_type == SagaEventType.RUN_ROLLED_BACK:
                result = "rolled_back" if event.details.get("clean") else "rolled_back_unclean"
                self._metrics.record_run(
                    event.saga,
                    result,
                    event.details.get("duration_seconds"),
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "saga": event.saga,
                    "error": str(e),
                },
            )
