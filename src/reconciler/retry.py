"""Bounded retry with fixed backoff for mutating backend calls.

Every operation kind goes through retry() so backoff and budget semantics
are identical across adopt, update and forget. Only the mutate phase is
retried; waits never retry (repeated lack of progress becomes a timeout).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .errors import (
    CancellationRequested,
    FatalBackendError,
    RetryExhaustedError,
    TransitionError,
    classify,
    is_retryable as is_transient_error,
)
from .waiter import Clock, Sleeper, cancellable_sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_BUDGET_SECONDS = 60.0
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0


@dataclass
class RetryOutcome(Generic[T]):
    """Value returned by the operation plus how many attempts it took."""

    value: T
    attempts: int
    elapsed_seconds: float


async def retry(
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    max_elapsed_seconds: float = DEFAULT_RETRY_BUDGET_SECONDS,
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
    *,
    cancel: asyncio.Event | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleeper = cancellable_sleep,
    operation_name: str = "operation",
    log_extra: dict[str, Any] | None = None,
) -> RetryOutcome[T]:
    """Run an operation, retrying transient failures with fixed backoff.

    A Retry-After hint from the backend stretches the wait when it is
    longer than the fixed backoff.

    Args:
        operation: Zero-argument async callable to run.
        is_retryable: Predicate selecting errors worth another attempt.
        max_elapsed_seconds: Overall budget; no attempt starts past it.
        backoff_seconds: Fixed delay between attempts.
        cancel: Optional event; setting it stops further attempts.
        clock: Monotonic clock returning seconds.
        sleep: Cancellable sleep.
        operation_name: Human-readable name for logs and messages.
        log_extra: Extra structured fields added to retry log records.

    Returns:
        RetryOutcome with the operation's value and the attempt count.

    Raises:
        FatalBackendError: The operation raised a non-retryable error.
        RetryExhaustedError: Retryable errors outlasted the budget.
        CancellationRequested: The cancel event was set between attempts.
    """
    start = clock()
    attempt = 0
    extra = dict(log_extra or {})

    while True:
        if cancel is not None and cancel.is_set():
            raise CancellationRequested(
                f"{operation_name} cancelled by caller after {attempt} attempts",
                elapsed_seconds=clock() - start,
            )

        attempt += 1
        try:
            value = await operation()
            return RetryOutcome(value=value, attempts=attempt, elapsed_seconds=clock() - start)
        except TransitionError:
            raise
        except Exception as e:
            elapsed = clock() - start

            if not is_retryable(e):
                raise FatalBackendError(
                    f"{operation_name} failed: {e}",
                    elapsed_seconds=elapsed,
                    cause=e,
                ) from e

            hint = classify(e, attempt=attempt).retry_after
            wait_time = max(backoff_seconds, hint or 0.0)

            if elapsed + wait_time > max_elapsed_seconds:
                raise RetryExhaustedError(
                    f"{operation_name} still failing after {attempt} attempts "
                    f"in {elapsed:.1f}s: {e}",
                    attempts=attempt,
                    elapsed_seconds=elapsed,
                    cause=e,
                ) from e

            logger.warning(
                f"{operation_name} failed with a transient error, retrying",
                extra={
                    **extra,
                    "attempt": attempt,
                    "wait_seconds": wait_time,
                    "error": str(e),
                },
            )
            await sleep(wait_time, cancel)
