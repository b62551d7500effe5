"""Tests for the retry combinator."""

from __future__ import annotations

import asyncio

import pytest
from controller_mock import FakeClock, busy_error, fatal_error

from reconciler.errors import (
    CancellationRequested,
    FailureKind,
    FatalBackendError,
    RetryExhaustedError,
    WaitTimeoutError,
)
from reconciler.retry import retry


class Flaky:
    """Async operation that fails with the given errors, then returns a value."""

    def __init__(self, *errors: BaseException, value: str = "ok") -> None:
        self._errors = list(errors)
        self._value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._value


class TestRetry:
    """Tests for retry()."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, clock: FakeClock) -> None:
        operation = Flaky()

        outcome = await retry(operation, clock=clock, sleep=clock.sleep)

        assert outcome.value == "ok"
        assert outcome.attempts == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retryable_errors_use_fixed_backoff(self, clock: FakeClock) -> None:
        operation = Flaky(busy_error(), busy_error())

        outcome = await retry(
            operation, max_elapsed_seconds=60, backoff_seconds=2, clock=clock, sleep=clock.sleep
        )

        assert outcome.attempts == 3
        assert operation.calls == 3
        assert clock.sleeps == [2, 2]
        assert outcome.elapsed_seconds == 4

    @pytest.mark.asyncio
    async def test_retry_after_stretches_backoff(self, clock: FakeClock) -> None:
        operation = Flaky(busy_error(retry_after=7))

        await retry(operation, backoff_seconds=2, clock=clock, sleep=clock.sleep)

        assert clock.sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, clock: FakeClock) -> None:
        error = fatal_error()
        operation = Flaky(error)

        with pytest.raises(FatalBackendError) as exc_info:
            await retry(operation, clock=clock, sleep=clock.sleep)

        assert exc_info.value.cause is error
        assert exc_info.value.kind == FailureKind.FATAL
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, clock: FakeClock) -> None:
        operation = Flaky(*[busy_error() for _ in range(10)])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry(
                operation, max_elapsed_seconds=5, backoff_seconds=2, clock=clock, sleep=clock.sleep
            )

        # Attempts at t=0, 2, 4; another wait would pass the 5s budget
        assert exc_info.value.attempts == 3
        assert exc_info.value.kind == FailureKind.RETRY_EXHAUSTED
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_zero_budget_means_single_attempt(self, clock: FakeClock) -> None:
        operation = Flaky(busy_error())

        with pytest.raises(RetryExhaustedError):
            await retry(operation, max_elapsed_seconds=0, clock=clock, sleep=clock.sleep)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_custom_predicate(self, clock: FakeClock) -> None:
        operation = Flaky(ValueError("flaky"))

        outcome = await retry(
            operation,
            is_retryable=lambda e: isinstance(e, ValueError),
            clock=clock,
            sleep=clock.sleep,
        )

        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_transition_errors_pass_through(self, clock: FakeClock) -> None:
        error = WaitTimeoutError("slow")
        operation = Flaky(error)

        with pytest.raises(WaitTimeoutError) as exc_info:
            await retry(operation, clock=clock, sleep=clock.sleep)

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_cancel_stops_further_attempts(self, clock: FakeClock) -> None:
        cancel = asyncio.Event()
        operation = Flaky(busy_error(), busy_error())

        async def sleep_and_cancel(seconds: float, event: asyncio.Event | None = None) -> None:
            await clock.sleep(seconds, event)
            cancel.set()

        with pytest.raises(CancellationRequested):
            await retry(operation, cancel=cancel, clock=clock, sleep=sleep_and_cancel)

        assert operation.calls == 1
