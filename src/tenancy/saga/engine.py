"""Saga engine implementation.

This module implements the SagaEngine class that runs an ordered list of
steps against a shared context and, on failure, undoes what was done.

Execution rules:
- Entries run strictly in list order. Each step reads the context and
  returns outputs; the engine merges them into a new context for the
  next entry.
- A ParallelSteps entry starts all members at once and waits for every
  one of them (join) before the run moves on. Each member that succeeded
  is recorded as its own completed step.
- Every step has a finite timeout. A remote call in flight is never
  aborted: on timeout the step is failed, but the engine waits for the
  call to settle before rolling back, and compensates it if it landed.
- Cancellation is cooperative. The cancel event is checked before each
  entry; once an entry has started it runs to completion.

Rollback rules:
- No entry after the first failure runs.
- Completed steps are compensated in reverse order of completion, each
  with the context as it stood right after that step succeeded.
- Compensation errors are collected, never raised individually. The run
  ends with one SagaFailedError reporting the failure, what was rolled
  back, and what could not be (manual remediation).

The engine keeps no state between runs. The per-run context is owned by
the run that created it.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from src.tenancy.errors import (
    CompensationFailedError,
    SagaCancelledError,
    SagaFailedError,
    StepFailedError,
    StepTimeoutError,
    WorkflowDefinitionError,
)
from src.tenancy.events.emitter import EventEmitter
from src.tenancy.events.models import SagaEvent, SagaEventType
from src.tenancy.saga.context import SagaContext
from src.tenancy.saga.step import ParallelSteps, SagaEntry, Step


logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT_SECONDS = 30.0


@dataclass
class CompletedStep:
    """A step whose write happened, with the context it completed with."""

    step: Step
    context: SagaContext


@dataclass
class _Outcome:
    step: Step
    context: Optional[SagaContext] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None


class SagaEngine:
    """Runs saga steps in order and compensates them on failure.

    Attributes:
        name: Saga name used in errors, events and logs.
        default_timeout_seconds: Timeout for steps that do not set one.
        event_emitter: Optional sink for saga events.

    Example:
        >>> engine = SagaEngine("provision_workspace", event_emitter=LoggingEventEmitter())
        >>> context = await engine.run(steps, {"owner_id": user_id})
        >>> context["workspace_id"]
    """

    def __init__(
        self,
        name: str,
        default_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS,
        event_emitter: Optional[EventEmitter] = None,
    ):
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        self.name = name
        self.default_timeout_seconds = default_timeout_seconds
        self.event_emitter = event_emitter

    async def run(
        self,
        entries: Sequence[SagaEntry],
        context: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SagaContext:
        """Execute entries in order, threading outputs through the context.

        Args:
            entries: Steps and parallel groups, in dependency order.
            context: Initial context values.
            cancel_event: Set it to stop the run before its next entry.

        Returns:
            The final context, containing every step's outputs.

        Raises:
            SagaFailedError: If any step failed or the run was cancelled.
                Completed steps have been compensated; check is_clean.
        """
        current = context if isinstance(context, SagaContext) else SagaContext(context)
        run_id = uuid.uuid4().hex
        started = time.monotonic()
        completed: List[CompletedStep] = []
        failures: List[StepFailedError] = []
        in_flight: List[Tuple[Step, "asyncio.Future[Any]"]] = []

        logger.info(
            "Starting saga run",
            extra={"saga": self.name, "run_id": run_id, "entries": len(entries)},
        )
        await self._emit(SagaEventType.RUN_STARTED, run_id)

        try:
            for entry in entries:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(
                        "Saga run cancelled",
                        extra={"saga": self.name, "run_id": run_id, "next_step": entry.name},
                    )
                    failures.append(
                        StepFailedError(entry.name, SagaCancelledError(entry.name))
                    )
                    break

                members = entry.steps if isinstance(entry, ParallelSteps) else (entry,)
                in_flight = [
                    (step, asyncio.ensure_future(step.execute(current)))
                    for step in members
                ]
                outcomes = await asyncio.gather(
                    *(self._settle(step, task, current) for step, task in in_flight)
                )
                in_flight = []

                next_context = current
                for outcome in outcomes:
                    if outcome.context is not None:
                        completed.append(CompletedStep(outcome.step, outcome.context))
                        next_context = next_context.extend(outcome.outputs)
                    if outcome.error is not None:
                        failures.append(StepFailedError(outcome.step.name, outcome.error))
                        await self._record_step_failure(run_id, outcome)
                    else:
                        await self._emit(
                            SagaEventType.STEP_COMPLETED,
                            run_id,
                            step=outcome.step.name,
                            outputs=sorted(outcome.outputs),
                        )

                if failures:
                    break
                current = next_context

        except asyncio.CancelledError:
            # The run task itself was cancelled. Let in-flight calls settle,
            # undo everything that landed, then let the cancellation through.
            for step, task in in_flight:
                await asyncio.wait({task})
                outcome = self._outcome_of(step, task, current)
                if outcome.context is not None:
                    completed.append(CompletedStep(step, outcome.context))
            logger.warning(
                "Saga run task cancelled; rolling back",
                extra={"saga": self.name, "run_id": run_id, "completed": len(completed)},
            )
            await self._compensate(run_id, completed)
            raise

        duration = time.monotonic() - started

        if not failures:
            logger.info(
                "Saga run completed",
                extra={"saga": self.name, "run_id": run_id, "duration_seconds": duration},
            )
            await self._emit(
                SagaEventType.RUN_COMPLETED,
                run_id,
                duration_seconds=duration,
            )
            return current

        compensated, skipped, compensation_failures = await self._compensate(
            run_id, completed
        )
        error = SagaFailedError(
            saga=self.name,
            failure=failures[0],
            compensated=compensated,
            skipped=skipped,
            compensation_failures=compensation_failures,
            additional_failures=failures[1:],
        )

        log = logger.warning if error.is_clean else logger.error
        log(
            "Saga run rolled back",
            extra={
                "saga": self.name,
                "run_id": run_id,
                "failed_step": error.step,
                "error": str(error.cause),
                "compensated": compensated,
                "unrecovered": error.unrecovered_steps,
            },
        )
        await self._emit(
            SagaEventType.RUN_ROLLED_BACK,
            run_id,
            step=error.step,
            duration_seconds=time.monotonic() - started,
            clean=error.is_clean,
            unrecovered=error.unrecovered_steps,
        )
        raise error

    async def _settle(
        self,
        step: Step,
        task: "asyncio.Future[Any]",
        context: SagaContext,
    ) -> _Outcome:
        """Wait for a step's call within its timeout, never aborting it."""
        timeout = step.timeout_seconds or self.default_timeout_seconds
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Step exceeded timeout; waiting for in-flight call to settle",
                extra={"saga": self.name, "step": step.name, "timeout_seconds": timeout},
            )
            await asyncio.wait({task})
            outcome = self._outcome_of(step, task, context)
            outcome.error = StepTimeoutError(step.name, timeout)
            return outcome
        except Exception:
            # Read from the task below
            pass
        return self._outcome_of(step, task, context)

    def _outcome_of(
        self,
        step: Step,
        task: "asyncio.Future[Any]",
        context: SagaContext,
    ) -> _Outcome:
        if task.cancelled():
            return _Outcome(step, error=asyncio.CancelledError())

        error = task.exception()
        if error is not None:
            return _Outcome(step, error=error)

        outputs = dict(task.result() or {})
        outcome = _Outcome(step, context=context.extend(outputs), outputs=outputs)
        missing = [key for key in step.provides if key not in outputs]
        if missing:
            outcome.error = WorkflowDefinitionError(
                f"Step {step.name} did not provide {missing}"
            )
        return outcome

    async def _record_step_failure(self, run_id: str, outcome: _Outcome) -> None:
        logger.warning(
            "Saga step failed",
            extra={
                "saga": self.name,
                "run_id": run_id,
                "step": outcome.step.name,
                "error": str(outcome.error),
                "error_type": type(outcome.error).__name__,
            },
        )
        await self._emit(
            SagaEventType.STEP_FAILED,
            run_id,
            step=outcome.step.name,
            error=str(outcome.error),
            error_type=type(outcome.error).__name__,
        )

    async def _compensate(
        self,
        run_id: str,
        completed: List[CompletedStep],
    ) -> Tuple[List[str], List[str], List[CompensationFailedError]]:
        """Undo completed steps in reverse order, collecting failures."""
        compensated: List[str] = []
        skipped: List[str] = []
        failures: List[CompensationFailedError] = []

        for record in reversed(completed):
            step = record.step
            if step.compensate is None:
                skipped.append(step.name)
                continue

            try:
                await step.compensate(record.context)
            except Exception as e:
                failures.append(CompensationFailedError(step.name, e))
                logger.error(
                    "Compensation failed; manual cleanup required",
                    extra={
                        "saga": self.name,
                        "run_id": run_id,
                        "step": step.name,
                        "error": str(e),
                        "context": record.context.to_dict(),
                    },
                )
                await self._emit(
                    SagaEventType.COMPENSATION_FAILED,
                    run_id,
                    step=step.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            compensated.append(step.name)
            await self._emit(SagaEventType.STEP_COMPENSATED, run_id, step=step.name)

        return compensated, skipped, failures

    async def _emit(
        self,
        event_type: SagaEventType,
        run_id: str,
        step: Optional[str] = None,
        **details: Any,
    ) -> None:
        if self.event_emitter is None:
            return
        try:
            await self.event_emitter.emit(
                SagaEvent(
                    event_type=event_type,
                    saga=self.name,
                    run_id=run_id,
                    step=step,
                    details=details,
                )
            )
        except Exception as e:
            logger.error(
                "Failed to emit saga event",
                extra={"event_type": event_type.value, "saga": self.name, "error": str(e)},
            )
