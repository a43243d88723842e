"""Property-based tests for the saga engine.

Testing Configuration:
- Library: Hypothesis (Python)
- Properties: rollback order, context snapshots, cleanliness reporting
"""

from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from src.tenancy.errors import SagaFailedError
from src.tenancy.saga import SagaEngine, Step
from tests.tenancy.doubles import run_async


def build_steps(count: int, fail_at: int, broken_compensations: List[int], log: dict):
    steps = []
    for index in range(count):

        async def execute(context, index=index):
            log["executed"].append(index)
            if index == fail_at:
                raise RuntimeError(f"step {index} failed")
            return {f"id_{index}": index}

        async def compensate(context, index=index):
            if index in broken_compensations:
                raise RuntimeError(f"undo {index} failed")
            log["compensated"].append(index)
            log["contexts"][index] = sorted(context.keys())

        provides = () if index == fail_at else (f"id_{index}",)
        steps.append(Step(f"step_{index}", execute, compensate, provides=provides))
    return steps


@settings(max_examples=60, deadline=None)
@given(data=st.data())
def test_rollback_is_reverse_of_completion(data):
    """Failing at step k runs steps 0..k and undoes k-1..0 in that order."""
    count = data.draw(st.integers(min_value=1, max_value=8), label="count")
    fail_at = data.draw(st.integers(min_value=0, max_value=count - 1), label="fail_at")
    log = {"executed": [], "compensated": [], "contexts": {}}

    with pytest.raises(SagaFailedError) as exc_info:
        run_async(SagaEngine("prop").run(build_steps(count, fail_at, [], log)))

    assert log["executed"] == list(range(fail_at + 1))
    assert log["compensated"] == list(reversed(range(fail_at)))
    assert exc_info.value.step == f"step_{fail_at}"
    assert exc_info.value.is_clean

    # Each compensation sees exactly the outputs produced up to its own step
    for index in range(fail_at):
        assert log["contexts"][index] == sorted(f"id_{i}" for i in range(index + 1))


@settings(max_examples=60, deadline=None)
@given(data=st.data())
def test_unclean_iff_a_compensation_fails(data):
    """The error is clean exactly when every compensation succeeded."""
    count = data.draw(st.integers(min_value=2, max_value=8), label="count")
    fail_at = data.draw(st.integers(min_value=1, max_value=count - 1), label="fail_at")
    broken = data.draw(
        st.lists(st.integers(min_value=0, max_value=fail_at - 1), unique=True),
        label="broken",
    )
    log = {"executed": [], "compensated": [], "contexts": {}}

    with pytest.raises(SagaFailedError) as exc_info:
        run_async(SagaEngine("prop").run(build_steps(count, fail_at, broken, log)))

    error = exc_info.value
    assert error.is_clean == (not broken)
    assert sorted(error.unrecovered_steps) == sorted(f"step_{i}" for i in broken)
    # Every other completed step was still rolled back
    assert sorted(log["compensated"]) == sorted(set(range(fail_at)) - set(broken))


@settings(max_examples=30, deadline=None)
@given(count=st.integers(min_value=0, max_value=10))
def test_successful_run_never_compensates(count):
    log = {"executed": [], "compensated": [], "contexts": {}}
    context = run_async(SagaEngine("prop").run(build_steps(count, -1, [], log)))

    assert log["executed"] == list(range(count))
    assert log["compensated"] == []
    assert sorted(context.keys()) == sorted(f"id_{i}" for i in range(count))
