"""Step definitions for the saga engine.

A Step is a pure description of one remote action and its undo. It does
not run anything by itself; the engine decides when to execute it, with
which context, and whether to compensate it.

ParallelSteps groups steps that have no dependencies on each other. The
engine runs them concurrently and joins them before moving on.
"""

from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from src.tenancy.errors import WorkflowDefinitionError
from src.tenancy.saga.context import SagaContext


StepAction = Callable[[SagaContext], Awaitable[Optional[Mapping[str, Any]]]]
Compensation = Callable[[SagaContext], Awaitable[None]]


@dataclass(frozen=True)
class Step:
    """A named unit of work with an optional compensation.

    Attributes:
        name: Unique step name, used in errors, events and logs.
        execute: Coroutine function taking the context and returning the
            outputs to merge into it.
        compensate: Coroutine function undoing execute, given the context as
            it stood right after execute succeeded. None for steps with
            nothing to undo (reads, or the final committing step).
        requires: Context keys the step reads.
        provides: Context keys the step's outputs must contain.
        timeout_seconds: Overrides the engine's default step timeout.
    """

    name: str
    execute: StepAction
    compensate: Optional[Compensation] = None
    requires: Tuple[str, ...] = ()
    provides: Tuple[str, ...] = ()
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class ParallelSteps:
    """Independent steps executed concurrently and joined.

    Attributes:
        name: Name of the join point.
        steps: Member steps; none may require another member's outputs.
    """

    name: str
    steps: Tuple[Step, ...] = field(default_factory=tuple)

    @property
    def requires(self) -> Tuple[str, ...]:
        return tuple(key for step in self.steps for key in step.requires)

    @property
    def provides(self) -> Tuple[str, ...]:
        return tuple(key for step in self.steps for key in step.provides)


SagaEntry = Union[Step, ParallelSteps]


def validate_step_order(entries: Sequence[SagaEntry], initial_keys: Iterable[str]) -> None:
    """Check that a step list is in dependency order.

    Every key a step requires must be in the initial context or provided
    by an entry earlier in the list. Members of a ParallelSteps group may
    not depend on each other. No key may be provided twice, and step names
    must be unique.

    Raises:
        WorkflowDefinitionError: If any rule is violated.
    """
    available: Set[str] = set(initial_keys)
    names: Set[str] = set()

    for entry in entries:
        members = entry.steps if isinstance(entry, ParallelSteps) else (entry,)
        if isinstance(entry, ParallelSteps) and not members:
            raise WorkflowDefinitionError(f"Parallel group {entry.name} has no steps")

        produced: Set[str] = set()
        for step in members:
            if step.name in names:
                raise WorkflowDefinitionError(f"Duplicate step name {step.name}")
            names.add(step.name)

            missing = [key for key in step.requires if key not in available]
            if missing:
                raise WorkflowDefinitionError(
                    f"Step {step.name} requires {missing} before they are provided"
                )

            for key in step.provides:
                if key in available or key in produced:
                    raise WorkflowDefinitionError(
                        f"Step {step.name} provides {key!r}, which is already provided"
                    )
                produced.add(key)

        available |= produced
