"""Unit tests for the idempotency guard and request keys."""

import asyncio
import traceback

import pytest
from hypothesis import given, settings, strategies as st

from src.tenancy.idempotency import IdempotencyGuard, make_request_key
from tests.tenancy.doubles import run_async


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Counter:
    """Coroutine function counting its invocations."""

    def __init__(self, result="done", error=None, delay=0.0):
        self.calls = 0
        self.result = result
        self.error = error
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return f"{self.result}-{self.calls}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return IdempotencyGuard(retention_seconds=60, max_entries=3, clock=clock)


class TestMakeRequestKey:

    def test_is_sha256_hex(self):
        key = make_request_key("user-1", "provision_workspace", "token", "Acme")
        assert len(key) == 64
        int(key, 16)

    def test_same_inputs_same_key(self):
        assert make_request_key("u", "op", "t", "Acme") == make_request_key("u", "op", "t", "Acme")

    def test_different_inputs_different_key(self):
        base = make_request_key("u", "op", "t", "Acme")
        assert make_request_key("other", "op", "t", "Acme") != base
        assert make_request_key("u", "other", "t", "Acme") != base
        assert make_request_key("u", "op", "other", "Acme") != base
        assert make_request_key("u", "op", "t", "Globex") != base

    @settings(max_examples=100)
    @given(a=st.text(), b=st.text())
    def test_part_boundaries_are_unambiguous(self, a, b):
        joined = make_request_key("u", "op", "t", a + b)
        split = make_request_key("u", "op", "t", a, b)
        assert joined != split


class TestGuard:

    def test_runs_once_and_replays_result(self, guard):
        fn = Counter()

        async def scenario():
            first = await guard.guard("k", fn)
            second = await guard.guard("k", fn)
            return first, second

        assert run_async(scenario()) == ("done-1", "done-1")
        assert fn.calls == 1

    def test_different_keys_run_separately(self, guard):
        fn = Counter()

        async def scenario():
            return await guard.guard("a", fn), await guard.guard("b", fn)

        assert run_async(scenario()) == ("done-1", "done-2")

    def test_concurrent_callers_share_one_run(self, guard):
        fn = Counter(delay=0.01)

        async def scenario():
            return await asyncio.gather(*(guard.guard("k", fn) for _ in range(5)))

        assert run_async(scenario()) == ["done-1"] * 5
        assert fn.calls == 1

    def test_error_is_cached_and_replayed(self, guard):
        fn = Counter(error=ValueError("bad"))

        async def scenario():
            for _ in range(2):
                with pytest.raises(ValueError, match="bad"):
                    await guard.guard("k", fn)

        run_async(scenario())
        assert fn.calls == 1

    def test_replayed_error_traceback_does_not_grow(self, guard):
        fn = Counter(error=ValueError("bad"))
        depths = []

        async def scenario():
            for _ in range(3):
                try:
                    await guard.guard("k", fn)
                except ValueError as e:
                    depths.append(len(list(traceback.walk_tb(e.__traceback__))))

        run_async(scenario())

        assert len(depths) == 3
        assert depths[1] == depths[2]
        assert fn.calls == 1

    def test_concurrent_callers_share_error(self, guard):
        fn = Counter(error=ValueError("bad"), delay=0.01)

        async def scenario():
            return await asyncio.gather(
                *(guard.guard("k", fn) for _ in range(3)), return_exceptions=True
            )

        results = run_async(scenario())
        assert all(isinstance(r, ValueError) for r in results)
        assert fn.calls == 1

    def test_expired_outcome_runs_again(self, guard, clock):
        fn = Counter()

        async def scenario():
            first = await guard.guard("k", fn)
            clock.now += 61
            second = await guard.guard("k", fn)
            return first, second

        assert run_async(scenario()) == ("done-1", "done-2")

    def test_outcome_within_retention_is_replayed(self, guard, clock):
        fn = Counter()

        async def scenario():
            await guard.guard("k", fn)
            clock.now += 59
            return await guard.guard("k", fn)

        assert run_async(scenario()) == "done-1"

    def test_cache_is_bounded_oldest_first(self, guard):
        fn = Counter()

        async def scenario():
            for key in ("a", "b", "c", "d"):
                await guard.guard(key, fn)
            # "a" was evicted; "d" is still cached
            again_a = await guard.guard("a", fn)
            again_d = await guard.guard("d", fn)
            return again_a, again_d

        again_a, again_d = run_async(scenario())
        assert again_a == "done-5"
        assert again_d == "done-4"
        assert len(guard) <= 3

    def test_cancelled_first_caller_hands_over_to_waiter(self, guard):
        calls = []

        async def slow():
            calls.append("run")
            await asyncio.sleep(0.05)
            return len(calls)

        async def scenario():
            first = asyncio.ensure_future(guard.guard("k", slow))
            await asyncio.sleep(0)
            second = asyncio.ensure_future(guard.guard("k", slow))
            await asyncio.sleep(0.01)
            first.cancel()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await second

        assert run_async(scenario()) == 2
        assert calls == ["run", "run"]

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            IdempotencyGuard(retention_seconds=0)
        with pytest.raises(ValueError):
            IdempotencyGuard(max_entries=0)
