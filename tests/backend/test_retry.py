from __future__ import annotations

import asyncio

import pytest

from stylo.errors import GraderFormatError, GraderRejected, GraderUnavailable
from stylo.retry import CancelToken, OperationCancelled, RetryPolicy, call_with_retry, wait_or_cancel
from tests.fakes import RecordingSleep


class _Flaky:
    def __init__(self, failures: list[BaseException], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.attempts = 0

    async def __call__(self) -> str:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_policy_delays_double_per_attempt() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_policy_only_retries_transient_errors_within_budget() -> None:
    policy = RetryPolicy(max_attempts=3)
    assert policy.should_retry(1, GraderUnavailable())
    assert policy.should_retry(2, GraderUnavailable())
    assert not policy.should_retry(3, GraderUnavailable())
    assert not policy.should_retry(1, GraderRejected())
    assert not policy.should_retry(1, GraderFormatError())
    assert not policy.should_retry(1, RuntimeError("bug"))


def test_exactly_three_attempts_on_repeated_transient_failure() -> None:
    call = _Flaky([GraderUnavailable(), GraderUnavailable(), GraderUnavailable(), GraderUnavailable()])
    sleep = RecordingSleep()

    with pytest.raises(GraderUnavailable):
        asyncio.run(call_with_retry(call, policy=RetryPolicy(max_attempts=3), sleep=sleep))

    assert call.attempts == 3
    assert sleep.delays == [1.0, 2.0]
    assert all(a <= b for a, b in zip(sleep.delays, sleep.delays[1:]))


def test_recovers_after_transient_failure() -> None:
    call = _Flaky([GraderUnavailable()])
    sleep = RecordingSleep()

    result = asyncio.run(call_with_retry(call, policy=RetryPolicy(), sleep=sleep))

    assert result == "ok"
    assert call.attempts == 2
    assert sleep.delays == [1.0]


@pytest.mark.parametrize("error", [GraderRejected(), GraderFormatError()])
def test_non_transient_failure_is_not_retried(error: Exception) -> None:
    call = _Flaky([error])
    sleep = RecordingSleep()

    with pytest.raises(type(error)):
        asyncio.run(call_with_retry(call, policy=RetryPolicy(), sleep=sleep))

    assert call.attempts == 1
    assert sleep.delays == []


def test_cancel_aborts_in_flight_call() -> None:
    async def scenario() -> bool:
        cancel = CancelToken()
        started = asyncio.Event()
        aborted = False

        async def slow() -> str:
            nonlocal aborted
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                aborted = True
                raise
            return "late"

        task = asyncio.create_task(call_with_retry(slow, policy=RetryPolicy(), cancel=cancel))
        await started.wait()
        cancel.cancel("client_disconnected")
        with pytest.raises(OperationCancelled):
            await task
        return aborted

    assert asyncio.run(scenario()) is True


def test_cancel_during_backoff_stops_retrying() -> None:
    async def scenario() -> int:
        cancel = CancelToken()
        call = _Flaky([GraderUnavailable(), GraderUnavailable()])

        async def sleep(delay: float) -> None:
            cancel.cancel()
            await asyncio.sleep(30)

        with pytest.raises(OperationCancelled):
            await call_with_retry(call, policy=RetryPolicy(), cancel=cancel, sleep=sleep)
        return call.attempts

    assert asyncio.run(scenario()) == 1


def test_already_cancelled_token_skips_the_call() -> None:
    async def scenario() -> int:
        cancel = CancelToken()
        cancel.cancel()
        call = _Flaky([])
        with pytest.raises(OperationCancelled):
            await call_with_retry(call, policy=RetryPolicy(), cancel=cancel)
        return call.attempts

    assert asyncio.run(scenario()) == 0


def test_wait_or_cancel_without_token_just_awaits() -> None:
    async def value() -> int:
        return 42

    assert asyncio.run(wait_or_cancel(value(), None)) == 42
