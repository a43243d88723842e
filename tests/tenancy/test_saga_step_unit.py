"""Unit tests for step definitions, ordering validation and the saga context."""

import pytest

from src.tenancy.errors import WorkflowDefinitionError
from src.tenancy.saga import (
    MissingContextError,
    ParallelSteps,
    SagaContext,
    Step,
    validate_step_order,
)


async def _noop(context):
    return {}


def make_step(name, requires=(), provides=()):
    return Step(name=name, execute=_noop, requires=requires, provides=provides)


class TestValidateStepOrder:

    def test_valid_order_passes(self):
        steps = [
            make_step("a", requires=("seed",), provides=("a_id",)),
            make_step("b", requires=("a_id",), provides=("b_id",)),
        ]
        validate_step_order(steps, ["seed"])

    def test_requirement_before_provider_fails(self):
        steps = [
            make_step("b", requires=("a_id",)),
            make_step("a", provides=("a_id",)),
        ]
        with pytest.raises(WorkflowDefinitionError, match="requires"):
            validate_step_order(steps, [])

    def test_duplicate_provider_fails(self):
        steps = [
            make_step("a", provides=("row_id",)),
            make_step("b", provides=("row_id",)),
        ]
        with pytest.raises(WorkflowDefinitionError, match="already provided"):
            validate_step_order(steps, [])

    def test_providing_an_initial_key_fails(self):
        with pytest.raises(WorkflowDefinitionError):
            validate_step_order([make_step("a", provides=("seed",))], ["seed"])

    def test_duplicate_step_name_fails(self):
        with pytest.raises(WorkflowDefinitionError, match="Duplicate step name"):
            validate_step_order([make_step("a"), make_step("a")], [])

    def test_parallel_members_cannot_depend_on_each_other(self):
        group = ParallelSteps(
            "fan_out",
            (
                make_step("x", provides=("x_id",)),
                make_step("y", requires=("x_id",)),
            ),
        )
        with pytest.raises(WorkflowDefinitionError):
            validate_step_order([group], [])

    def test_parallel_outputs_available_after_join(self):
        group = ParallelSteps(
            "fan_out",
            (make_step("x", provides=("x_id",)), make_step("y", provides=("y_id",))),
        )
        validate_step_order([group, make_step("z", requires=("x_id", "y_id"))], [])

    def test_empty_parallel_group_fails(self):
        with pytest.raises(WorkflowDefinitionError, match="no steps"):
            validate_step_order([ParallelSteps("empty", ())], [])

    def test_parallel_group_aggregates_keys(self):
        group = ParallelSteps(
            "fan_out",
            (
                make_step("x", requires=("seed",), provides=("x_id",)),
                make_step("y", provides=("y_id",)),
            ),
        )
        assert group.requires == ("seed",)
        assert group.provides == ("x_id", "y_id")


class TestSagaContext:

    def test_extend_returns_new_context(self):
        base = SagaContext({"a": 1})
        extended = base.extend({"b": 2})
        assert dict(base) == {"a": 1}
        assert dict(extended) == {"a": 1, "b": 2}

    def test_extend_with_nothing_returns_same_context(self):
        base = SagaContext({"a": 1})
        assert base.extend({}) is base
        assert base.extend(None) is base

    def test_missing_key_raises_missing_context_error(self):
        context = SagaContext()
        with pytest.raises(MissingContextError) as exc_info:
            context["workspace_id"]
        assert exc_info.value.key == "workspace_id"
        assert "workspace_id" in str(exc_info.value)

    def test_missing_context_error_is_a_key_error(self):
        context = SagaContext({"a": 1})
        assert context.get("missing", "default") == "default"
        assert "missing" not in context
        assert "a" in context

    def test_to_dict_is_a_copy(self):
        context = SagaContext({"a": 1})
        snapshot = context.to_dict()
        snapshot["a"] = 2
        assert context["a"] == 1
