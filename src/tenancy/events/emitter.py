"""Event emitter implementations for saga observability.

- EventEmitter: abstract interface
- LoggingEventEmitter: emits events as structured log entries
- CompositeEventEmitter: emits to multiple sinks simultaneously

Emitters must never affect the saga they observe: failures are logged
and swallowed by the composite, and the engine guards its own calls.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from src.tenancy.events.models import SagaEvent, SagaEventType


logger = logging.getLogger(__name__)


class EventEmitter(ABC):
    """Abstract base class for saga event emitters."""

    @abstractmethod
    async def emit(self, event: SagaEvent) -> None:
        """Publish the event to the configured sink."""
        pass

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that writes events as structured log entries.

    Log levels by event type:
    - STEP_FAILED, STEP_COMPENSATED, RUN_ROLLED_BACK: WARNING
    - COMPENSATION_FAILED: ERROR
    - everything else: INFO
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            SagaEventType.RUN_STARTED: logging.INFO,
            SagaEventType.STEP_COMPLETED: logging.INFO,
            SagaEventType.STEP_FAILED: logging.WARNING,
            SagaEventType.STEP_COMPENSATED: logging.WARNING,
            SagaEventType.COMPENSATION_FAILED: logging.ERROR,
            SagaEventType.RUN_COMPLETED: logging.INFO,
            SagaEventType.RUN_ROLLED_BACK: logging.WARNING,
        }

    async def emit(self, event: SagaEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Saga event: %s for %s/%s",
            event.event_type.value,
            event.saga,
            event.step or "-",
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Each child is called independently; a failing child is logged and
    does not stop delivery to the others.

    Example:
        >>> composite = CompositeEventEmitter([LoggingEventEmitter(), MetricsEventEmitter()])
        >>> await composite.emit(event)
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: SagaEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Event emitter %s failed: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "saga": event.saga,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )
