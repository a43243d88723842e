"""Error taxonomy for workspace provisioning and invitation resolution.

Every failure that leaves this package is one of the classes below. Raw
transport errors are wrapped at the gateway boundary (GatewayError) and
again at the step boundary (StepFailedError), so callers only ever have
to reason about these types.

Corrective errors (the caller can retry with different input):
- InvalidInputError
- NotFoundError

Saga outcomes (must stay visibly distinct):
- ProvisioningFailedError / InvitationFailedError: the run failed and every
  completed step was rolled back. Nothing was kept.
- ProvisioningFailedUncleanError / InvitationFailedUncleanError: the run
  failed and at least one rollback failed. Manual cleanup is required.
"""

from typing import List, Optional


class TenancyError(Exception):
    """Base class for all errors raised by the tenancy package.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidInputError(TenancyError):
    """Raised by pre-flight validation, before any write is attempted.

    Attributes:
        field: Name of the offending input.
    """

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class NotFoundError(TenancyError):
    """Raised when a referenced entity does not exist.

    Attributes:
        kind: Entity kind that was looked up (e.g. "workspace_invites").
        key: The identifier or filter that matched nothing.
    """

    def __init__(self, kind: str, key: object, message: Optional[str] = None):
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind} not found: {key}")


class ConflictError(TenancyError):
    """Raised when a write violates a uniqueness invariant."""

    pass


class WorkflowDefinitionError(TenancyError):
    """Raised when a step list is not in dependency order."""

    pass


class StepTimeoutError(TenancyError):
    """Cause recorded when a step exceeds its timeout.

    Attributes:
        step: Name of the step that timed out.
        timeout_seconds: The timeout that was exceeded.
    """

    def __init__(self, step: str, timeout_seconds: float):
        self.step = step
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Step {step} timed out after {timeout_seconds}s")


class SagaCancelledError(TenancyError):
    """Cause recorded when a run is cancelled between steps.

    Attributes:
        next_step: The step that would have run next.
    """

    def __init__(self, next_step: str):
        self.next_step = next_step
        super().__init__(f"Saga cancelled before step {next_step}")


class StepFailedError(TenancyError):
    """A single step failed; triggers compensation of completed steps.

    Attributes:
        step: Name of the failed step.
        cause: The underlying exception.
    """

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Step {step} failed: {cause}")


class CompensationFailedError(TenancyError):
    """Rolling back a completed step failed.

    Attributes:
        step: Name of the step whose compensation failed.
        cause: The underlying exception.
    """

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Compensation for step {step} failed: {cause}")


class SagaFailedError(TenancyError):
    """Composite failure raised by the saga engine.

    Reports the original failure together with the outcome of the
    rollback: which completed steps were undone, which had nothing to
    undo, and which could not be undone.

    Attributes:
        saga: Name of the saga that failed.
        failure: The StepFailedError that stopped the run.
        compensated: Steps rolled back successfully, in rollback order.
        skipped: Completed steps that declare no compensation.
        compensation_failures: Rollbacks that failed; these need manual
            remediation.
        additional_failures: Other failures from the same fan-out join.
    """

    def __init__(
        self,
        saga: str,
        failure: StepFailedError,
        compensated: Optional[List[str]] = None,
        skipped: Optional[List[str]] = None,
        compensation_failures: Optional[List[CompensationFailedError]] = None,
        additional_failures: Optional[List[StepFailedError]] = None,
        message: Optional[str] = None,
    ):
        self.saga = saga
        self.failure = failure
        self.compensated = list(compensated or [])
        self.skipped = list(skipped or [])
        self.compensation_failures = list(compensation_failures or [])
        self.additional_failures = list(additional_failures or [])
        super().__init__(message or self._default_message())

    @property
    def step(self) -> str:
        """Name of the step that failed."""
        return self.failure.step

    @property
    def cause(self) -> BaseException:
        """The underlying exception of the failed step."""
        return self.failure.cause

    @property
    def is_clean(self) -> bool:
        """True when every completed step was rolled back."""
        return not self.compensation_failures

    @property
    def unrecovered_steps(self) -> List[str]:
        """Steps whose effects are still present in the store."""
        return [f.step for f in self.compensation_failures]

    def _default_message(self) -> str:
        message = f"Saga {self.saga} failed at step {self.failure.step}: {self.failure.cause}"
        if self.compensation_failures:
            message += (
                f"; rollback incomplete, manual cleanup required for: "
                f"{', '.join(self.unrecovered_steps)}"
            )
        return message

    @classmethod
    def from_saga_failure(cls, error: "SagaFailedError", message: str) -> "SagaFailedError":
        """Re-raise a saga failure as a workflow-specific subclass."""
        return cls(
            saga=error.saga,
            failure=error.failure,
            compensated=error.compensated,
            skipped=error.skipped,
            compensation_failures=error.compensation_failures,
            additional_failures=error.additional_failures,
            message=message,
        )


class ProvisioningFailedError(SagaFailedError):
    """Workspace could not be created; nothing was kept."""

    pass


class ProvisioningFailedUncleanError(SagaFailedError):
    """Workspace could not be created and manual cleanup is required."""

    pass


class InvitationFailedError(SagaFailedError):
    """Invitation could not be resolved; nothing was kept."""

    pass


class InvitationFailedUncleanError(SagaFailedError):
    """Invitation could not be resolved and manual cleanup is required."""

    pass
