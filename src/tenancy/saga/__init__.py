"""Saga engine: ordered steps with reverse-order compensation."""

from src.tenancy.saga.context import MissingContextError, SagaContext
from src.tenancy.saga.engine import CompletedStep, SagaEngine
from src.tenancy.saga.step import (
    Compensation,
    ParallelSteps,
    SagaEntry,
    Step,
    StepAction,
    validate_step_order,
)

__all__ = [
    "Compensation",
    "CompletedStep",
    "MissingContextError",
    "ParallelSteps",
    "SagaContext",
    "SagaEngine",
    "SagaEntry",
    "Step",
    "StepAction",
    "validate_step_order",
]
