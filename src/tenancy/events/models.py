"""Saga event models for observability.

This module defines the data models for saga events:
- SagaEventType: Enum of all event types emitted by the saga engine
- SagaEvent: Structured event with run identity and details

Events give operators visibility into runs that were rolled back and,
most importantly, runs whose rollback was incomplete and need manual
cleanup.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SagaEventType(str, Enum):
    """Types of events emitted by the saga engine.

    Attributes:
        RUN_STARTED: A saga run began executing its first step.
        STEP_COMPLETED: A step finished and its outputs joined the context.
        STEP_FAILED: A step failed; rollback follows.
        STEP_COMPENSATED: A completed step was rolled back.
        COMPENSATION_FAILED: Rolling back a step failed; manual cleanup needed.
        RUN_COMPLETED: Every step completed.
        RUN_ROLLED_BACK: The run failed and rollback finished (cleanly or not).
    """

    RUN_STARTED = "run_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_COMPENSATED = "step_compensated"
    COMPENSATION_FAILED = "compensation_failed"
    RUN_COMPLETED = "run_completed"
    RUN_ROLLED_BACK = "run_rolled_back"


class SagaEvent(BaseModel):
    """Structured event emitted by the saga engine.

    Attributes:
        event_type: The category of event.
        saga: Name of the saga (e.g. "provision_workspace").
        run_id: Identifier of the run, for correlating events.
        step: Step the event refers to, if any.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STEP_FAILED / COMPENSATION_FAILED:
            - error: Human-readable error description
            - error_type: Exception class name
        RUN_COMPLETED / RUN_ROLLED_BACK:
            - duration_seconds: Wall-clock time of the run
            - clean: Whether every rollback succeeded (RUN_ROLLED_BACK only)
    """

    event_type: SagaEventType = Field(
        ...,
        description="The category of event being emitted",
    )

    saga: str = Field(
        ...,
        min_length=1,
        description="Name of the saga that emitted the event",
    )

    run_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the saga run",
    )

    step: Optional[str] = Field(
        default=None,
        description="Step the event refers to",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flat dictionary representation for structured logging."""
        return {
            "event_type": self.event_type.value,
            "saga": self.saga,
            "run_id": self.run_id,
            "step": self.step,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
