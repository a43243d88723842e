"""Saga event emission and metrics."""

from src.tenancy.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    LoggingEventEmitter,
)
from src.tenancy.events.metrics import (
    MetricsEventEmitter,
    SagaMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.tenancy.events.models import SagaEvent, SagaEventType

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "SagaEvent",
    "SagaEventType",
    "SagaMetrics",
    "generate_metrics_output",
    "get_metrics",
]
