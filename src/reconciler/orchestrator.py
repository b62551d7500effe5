"""Lifecycle orchestration: mutate, then wait for convergence.

A transition is:

1. (adopt only) a pre-check read; already converged means nothing to do
2. the operation's mutating call, retried on busy/conflict errors
3. a wait for the operation's target state (forget also accepts a
   device that comes back as pending adoption)

From the caller's point of view a transition is atomic: it returns a
TransitionResult once the entity has converged, or raises exactly one
TransitionError tagged with the phase (mutate or wait) it failed in.

The orchestrator takes no locks. Callers that can race two transitions
on the same device must serialize them externally.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import CancellationRequested, Phase, TransitionError, is_not_found
from .policies import TransitionPolicies
from .probe import RemoteStateProbe
from .retry import retry
from .states import ABSENT, DeviceState, EntityIdentity, State, TrackedEntity
from .waiter import Clock, Sleeper, StateConvergenceWaiter, WaitSpec, cancellable_sleep

logger = logging.getLogger(__name__)

# Async mutating call: (identity, payload) -> entity snapshot (or None)
MutateFunc = Callable[[EntityIdentity, Any], Awaitable[TrackedEntity | None]]

# First-observation noise, always treated as pending
IMPLICIT_PENDING_STATES: frozenset[DeviceState] = frozenset({DeviceState.UNKNOWN})


class Operation(str, Enum):
    """Lifecycle operations and the state each one drives towards."""

    ADOPT = "adopt"
    UPDATE = "update"
    FORGET = "forget"

    @property
    def target(self) -> State:
        if self is Operation.FORGET:
            return ABSENT
        return DeviceState.CONNECTED

    @property
    def expect_presence(self) -> bool:
        return self is not Operation.FORGET

    @property
    def skip_if_converged(self) -> bool:
        """Adopting an already-connected device is a no-op."""
        return self is Operation.ADOPT


@dataclass
class TransitionResult:
    """Outcome of a converged transition."""

    identity: EntityIdentity
    operation: Operation
    entity: TrackedEntity | None
    state: State
    mutate_attempts: int = 0
    probes: int = 0
    elapsed_seconds: float = 0.0

    @property
    def mutated(self) -> bool:
        """True if the mutating call was issued."""
        return self.mutate_attempts > 0

    @property
    def absent(self) -> bool:
        return self.state is ABSENT


class LifecycleOrchestrator:
    """Sequences a mutating call with a convergence wait."""

    def __init__(
        self,
        mutators: Mapping[Operation, MutateFunc],
        probe: RemoteStateProbe,
        policies: TransitionPolicies,
        *,
        waiter: StateConvergenceWaiter | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = cancellable_sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            mutators: Mutating call for each supported operation.
            probe: Probe used for the pre-check and the wait.
            policies: Per-operation timeouts, pending states and retry budget.
            waiter: Waiter to delegate to (built from clock/sleep if omitted).
            clock: Monotonic clock returning seconds.
            sleep: Cancellable sleep used for retry backoff and polling.
        """
        self._mutators = dict(mutators)
        self._probe = probe
        self._policies = policies
        self._clock = clock
        self._sleep = sleep
        self._waiter = waiter or StateConvergenceWaiter(clock=clock, sleep=sleep)

    @property
    def policies(self) -> TransitionPolicies:
        return self._policies

    def build_wait_spec(self, operation: Operation) -> WaitSpec:
        """Build the wait spec for an operation from its policy."""
        policy = self._policies.for_operation(operation.value)
        return WaitSpec(
            target=operation.target,
            pending=policy.pending,
            timeout_seconds=policy.timeout_seconds,
            poll_interval_seconds=policy.poll_interval_seconds,
            not_found_grace=policy.not_found_grace,
            expect_presence=operation.expect_presence,
            implicit_pending=IMPLICIT_PENDING_STATES,
            converged=policy.converged,
        )

    async def transition(
        self,
        entity: TrackedEntity | EntityIdentity,
        operation: Operation,
        payload: Any = None,
        cancel: asyncio.Event | None = None,
    ) -> TransitionResult:
        """Drive an entity through one lifecycle operation.

        Args:
            entity: The entity (or just its identity) to operate on.
            operation: Which operation to perform.
            payload: Operation-specific body passed to the mutating call.
            cancel: Optional event; setting it stops the transition.

        Returns:
            TransitionResult once the entity has converged.

        Raises:
            TransitionError: Exactly one structured failure, tagged with its phase.
            ValueError: If no mutating call is registered for the operation.
        """
        identity = entity.identity if isinstance(entity, TrackedEntity) else entity
        mutate = self._mutators.get(operation)
        if mutate is None:
            raise ValueError(f"No mutating call registered for operation '{operation.value}'")

        policy = self._policies.for_operation(operation.value)
        spec = self.build_wait_spec(operation)
        probe_fn = self._probe.bind(identity)
        log_extra: dict[str, Any] = {"identity": str(identity), "operation": operation.value}
        start = self._clock()

        logger.info("Starting transition", extra={**log_extra, "target": repr(spec.target)})

        try:
            if operation.skip_if_converged:
                if cancel is not None and cancel.is_set():
                    raise CancellationRequested(
                        f"{operation.value} {identity} cancelled before the pre-check",
                        elapsed_seconds=self._clock() - start,
                    ).with_phase(Phase.MUTATE)
                result = await self._precheck(identity, operation, probe_fn, spec, start)
                if result is not None:
                    return result

            async def call_mutate() -> TrackedEntity | None:
                try:
                    return await mutate(identity, payload)
                except Exception as e:
                    # Forgetting something already gone still converges on absence
                    if not operation.expect_presence and is_not_found(e):
                        logger.info("Entity already absent before mutate", extra=log_extra)
                        return None
                    raise

            try:
                outcome = await retry(
                    call_mutate,
                    max_elapsed_seconds=policy.retry_budget_seconds,
                    backoff_seconds=policy.retry_backoff_seconds,
                    cancel=cancel,
                    clock=self._clock,
                    sleep=self._sleep,
                    operation_name=f"{operation.value} {identity}",
                    log_extra=log_extra,
                )
            except TransitionError as e:
                e.with_phase(Phase.MUTATE)
                raise

            logger.info(
                "Mutating call accepted, waiting for convergence",
                extra={**log_extra, "attempts": outcome.attempts},
            )

            try:
                poll = await self._waiter.poll(probe_fn, spec, cancel)
            except TransitionError as e:
                e.with_phase(Phase.WAIT)
                raise

        except TransitionError as e:
            logger.error("Transition failed", extra={**log_extra, **e.to_dict()})
            raise

        result = TransitionResult(
            identity=identity,
            operation=operation,
            entity=poll.entity,
            state=poll.state,
            mutate_attempts=outcome.attempts,
            probes=poll.probes,
            elapsed_seconds=self._clock() - start,
        )
        logger.info(
            "Transition complete",
            extra={
                **log_extra,
                "state": repr(result.state),
                "attempts": result.mutate_attempts,
                "probes": result.probes,
                "elapsed_seconds": round(result.elapsed_seconds, 3),
            },
        )
        return result

    async def _precheck(
        self,
        identity: EntityIdentity,
        operation: Operation,
        probe_fn: Callable[[], Awaitable[Any]],
        spec: WaitSpec,
        start: float,
    ) -> TransitionResult | None:
        """Return a result if the entity already reports the target state."""
        try:
            observation = await probe_fn()
        except Exception as e:
            # Pre-check is only a shortcut, the mutate phase surfaces real errors
            logger.warning(
                "Pre-check read failed, continuing with mutating call",
                extra={"identity": str(identity), "error": str(e)},
            )
            return None

        if observation.state != spec.target:
            return None

        logger.info(
            "Entity already converged, skipping mutating call",
            extra={"identity": str(identity), "operation": operation.value},
        )
        return TransitionResult(
            identity=identity,
            operation=operation,
            entity=observation.entity,
            state=observation.state,
            mutate_attempts=0,
            probes=1,
            elapsed_seconds=self._clock() - start,
        )
