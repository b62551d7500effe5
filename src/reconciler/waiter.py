"""Poll a remote entity until it converges on a target state.

The waiter drives a probe on a fixed interval and resolves to exactly one
outcome:

- target (or converged state) observed -> PollResult with the entity
- absence confirmed (delete-style wait) -> PollResult with entity=None
- absent beyond grace (presence wait)   -> EntityNotFoundError
- state outside pending/target         -> UnexpectedStateError (fail fast)
- fatal probe error                    -> FatalBackendError
- budget exhausted                     -> WaitTimeoutError
- cancel event set                     -> CancellationRequested

The not-found counter and elapsed time are local to one poll() call.
Only one probe is in flight at a time and the only suspension points are
the probe itself and the cancellable inter-tick sleep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    CancellationRequested,
    EntityNotFoundError,
    ErrorKind,
    FatalBackendError,
    TransitionError,
    UnexpectedStateError,
    WaitTimeoutError,
    classify,
)
from .probe import Observation
from .states import ABSENT, State, TrackedEntity

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[], Awaitable[Observation]]
Clock = Callable[[], float]
Sleeper = Callable[[float, "asyncio.Event | None"], Awaitable[None]]

DEFAULT_POLL_INTERVAL_SECONDS = 3.0


async def cancellable_sleep(seconds: float, cancel: asyncio.Event | None = None) -> None:
    """Sleep for `seconds`, waking early if the cancel event is set."""
    if seconds <= 0:
        return
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        # Normal timeout, the full interval elapsed
        pass


@dataclass(frozen=True)
class WaitSpec:
    """What to wait for and for how long.

    Attributes:
        target: State that ends the wait successfully.
        pending: States that mean "still in progress". Must not contain target.
        timeout_seconds: Overall wait budget.
        poll_interval_seconds: Delay between probes.
        not_found_grace: Consecutive ABSENT observations tolerated.
        expect_presence: True if absence is a failure, False if absence is
            the success condition (delete-style waits).
        implicit_pending: First-observation noise (e.g. UNKNOWN) treated as
            pending unless it is the explicit target.
        converged: Further present states that also end the wait
            successfully, e.g. a forgotten device reappearing as pending.
    """

    target: State
    pending: frozenset[Any] = field(default_factory=frozenset)
    timeout_seconds: float = 60.0
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    not_found_grace: int = 0
    expect_presence: bool = True
    implicit_pending: frozenset[Any] = field(default_factory=frozenset)
    converged: frozenset[Any] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        # Accept any iterable for the state sets
        object.__setattr__(self, "pending", frozenset(self.pending))
        object.__setattr__(self, "implicit_pending", frozenset(self.implicit_pending))
        object.__setattr__(self, "converged", frozenset(self.converged))

        errors: list[str] = []
        if self.target in self.pending:
            errors.append(f"target {self.target!r} must not be a pending state")
        if ABSENT in self.pending or ABSENT in self.implicit_pending:
            errors.append("ABSENT is handled by not_found_grace and cannot be pending")
        if ABSENT in self.converged:
            errors.append("ABSENT cannot be a converged state, use target=ABSENT")
        if self.converged & self.pending:
            errors.append("converged states must not also be pending")
        if self.target is ABSENT and self.expect_presence:
            errors.append("target ABSENT requires expect_presence=False")
        if self.timeout_seconds <= 0:
            errors.append("timeout_seconds must be positive")
        if self.poll_interval_seconds <= 0:
            errors.append("poll_interval_seconds must be positive")
        if self.not_found_grace < 0:
            errors.append("not_found_grace cannot be negative")

        if errors:
            raise ValueError("Invalid wait spec: " + "; ".join(errors))

    def is_converged(self, state: State) -> bool:
        """Check whether an observed state ends the wait successfully."""
        return state == self.target or state in self.converged

    def is_pending(self, state: State) -> bool:
        """Check whether a state means the entity is still in progress."""
        if state in self.pending:
            return True
        return state in self.implicit_pending and state != self.target


@dataclass
class PollResult:
    """Successful outcome of a wait."""

    entity: TrackedEntity | None
    state: State
    probes: int
    elapsed_seconds: float

    @property
    def absent(self) -> bool:
        """True when the wait ended because absence was confirmed."""
        return self.state is ABSENT


class StateConvergenceWaiter:
    """Drives a probe until the entity converges, fails, times out or is cancelled."""

    def __init__(self, clock: Clock = time.monotonic, sleep: Sleeper = cancellable_sleep) -> None:
        """Initialize the waiter.

        Args:
            clock: Monotonic clock returning seconds.
            sleep: Cancellable sleep; receives the interval and the cancel event.
        """
        self._clock = clock
        self._sleep = sleep

    async def poll(
        self,
        probe: ProbeFunc,
        spec: WaitSpec,
        cancel: asyncio.Event | None = None,
    ) -> PollResult:
        """Poll until the wait resolves.

        Args:
            probe: Zero-argument async function performing one read.
            spec: Target, pending set and budget for this wait.
            cancel: Optional event; setting it stops the wait.

        Returns:
            PollResult for the converged entity, or an absence result.

        Raises:
            CancellationRequested: The cancel event was set.
            EntityNotFoundError: Absent beyond grace while presence expected.
            UnexpectedStateError: State outside pending and target.
            FatalBackendError: The probe raised a fatal backend error.
            WaitTimeoutError: The budget ran out before convergence.
        """
        start = self._clock()
        deadline = start + spec.timeout_seconds
        not_found = 0
        probes = 0
        last_state: State | None = None

        while True:
            now = self._clock()
            elapsed = now - start

            if cancel is not None and cancel.is_set():
                raise CancellationRequested(
                    f"Wait for {spec.target!r} cancelled by caller",
                    last_state=last_state,
                    elapsed_seconds=elapsed,
                )
            if now >= deadline:
                raise self._timeout(spec, last_state, elapsed)

            probes += 1
            observation: Observation | None = None
            try:
                observation = await asyncio.wait_for(probe(), timeout=deadline - now)
            except TransitionError:
                raise
            except TimeoutError as e:
                raise self._timeout(spec, last_state, self._clock() - start) from e
            except Exception as e:
                classified = classify(e, attempt=probes)
                if classified.kind == ErrorKind.FATAL:
                    raise FatalBackendError(
                        f"Probe failed while waiting for {spec.target!r}: {e}",
                        last_state=last_state,
                        elapsed_seconds=self._clock() - start,
                        cause=e,
                    ) from e
                # No new information this tick
                logger.debug(
                    "Probe error tolerated, polling again",
                    extra={
                        "probe": probes,
                        "error_kind": classified.kind.value,
                        "error_code": classified.error_code,
                    },
                )

            elapsed = self._clock() - start

            if observation is not None:
                state = observation.state
                last_state = state

                if state is ABSENT:
                    not_found += 1
                    if spec.expect_presence:
                        if not_found > spec.not_found_grace:
                            raise EntityNotFoundError(
                                f"Entity not found after {not_found} consecutive checks "
                                f"(grace {spec.not_found_grace})",
                                last_state=ABSENT,
                                elapsed_seconds=elapsed,
                            )
                    elif not_found >= max(spec.not_found_grace, 1):
                        logger.info(
                            "Entity absence confirmed",
                            extra={"probes": probes, "elapsed_seconds": round(elapsed, 3)},
                        )
                        return PollResult(None, ABSENT, probes, elapsed)

                elif spec.is_converged(state):
                    logger.info(
                        "Entity converged",
                        extra={
                            "state": repr(state),
                            "probes": probes,
                            "elapsed_seconds": round(elapsed, 3),
                        },
                    )
                    return PollResult(observation.entity, state, probes, elapsed)

                elif spec.is_pending(state):
                    # Presence confirmed, flicker window starts over
                    not_found = 0

                else:
                    raise UnexpectedStateError(
                        f"Unexpected state {state!r} while waiting for {spec.target!r} "
                        f"(pending: {sorted(map(repr, spec.pending))})",
                        last_state=state,
                        elapsed_seconds=elapsed,
                    )

                logger.debug(
                    "Entity not converged yet",
                    extra={"state": repr(state), "probe": probes, "not_found": not_found},
                )

            if self._clock() + spec.poll_interval_seconds >= deadline:
                raise self._timeout(spec, last_state, elapsed)

            await self._sleep(spec.poll_interval_seconds, cancel)

    @staticmethod
    def _timeout(spec: WaitSpec, last_state: State | None, elapsed: float) -> WaitTimeoutError:
        return WaitTimeoutError(
            f"Timed out after {elapsed:.1f}s waiting for {spec.target!r} "
            f"(last state: {last_state!r})",
            last_state=last_state,
            elapsed_seconds=elapsed,
        )
