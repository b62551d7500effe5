"""Controller readiness harness for integration runs.

ControllerHarness is an explicit handle owned by the caller, never a
module-level singleton. Launching the controller (docker compose, a VM,
...) is delegated to an optional Launcher; the harness only consumes the
controller's /status readiness contract:

    {"meta": {"up": true}}   -> READY
    {"meta": {"up": false}}  -> STARTING
    connection refused       -> DOWN
    unparseable response     -> UNKNOWN
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from azure.core.exceptions import AzureError, ServiceRequestError

from .client import ControllerClient
from .config import DEFAULT_HARNESS_STARTUP_TIMEOUT_SECONDS
from .probe import Observation
from .states import ControllerStatus, EntityIdentity, TrackedEntity
from .waiter import Clock, PollResult, Sleeper, StateConvergenceWaiter, WaitSpec, cancellable_sleep

logger = logging.getLogger(__name__)

HARNESS_POLL_INTERVAL_SECONDS = 1.0


class HarnessError(Exception):
    """Raised when the harness is used out of order or cannot launch."""

    pass


class Launcher(Protocol):
    """Starts and stops a controller instance. Both calls may block."""

    def up(self) -> None: ...

    def down(self) -> None: ...


class ControllerHarness:
    """Handle for a controller that integration runs depend on.

    Usage:
        harness = ControllerHarness(client, launcher=compose)
        await harness.start()
        await harness.wait_until_ready()
        ...
        await harness.shutdown()
    """

    def __init__(
        self,
        client: ControllerClient,
        *,
        launcher: Launcher | None = None,
        startup_timeout_seconds: float = DEFAULT_HARNESS_STARTUP_TIMEOUT_SECONDS,
        poll_interval_seconds: float = HARNESS_POLL_INTERVAL_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleeper = cancellable_sleep,
    ) -> None:
        self._client = client
        self._launcher = launcher
        self._startup_timeout_seconds = startup_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._waiter = StateConvergenceWaiter(clock=clock, sleep=sleep)
        self._identity = EntityIdentity(scope="controller", key=client.base_url)
        self._started = False
        self._launched = False
        self._stopped = False

    @property
    def started(self) -> bool:
        return self._started

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

    async def read_status(self) -> ControllerStatus:
        """Read the controller status once. Never raises for backend errors."""
        try:
            meta = await self._run(self._client.get_status)
        except ServiceRequestError as e:
            logger.debug("Controller unreachable", extra={"error": str(e)})
            return ControllerStatus.DOWN
        except AzureError as e:
            logger.debug("Controller status unreadable", extra={"error": str(e)})
            return ControllerStatus.UNKNOWN

        if "up" not in meta:
            return ControllerStatus.UNKNOWN
        return ControllerStatus.READY if meta["up"] is True else ControllerStatus.STARTING

    async def is_ready(self) -> bool:
        """Single /status read: True only if the controller reports up."""
        return await self.read_status() == ControllerStatus.READY

    async def start(self) -> None:
        """Launch the controller unless it is already running.

        Raises:
            HarnessError: The controller is not running and no launcher is set.
        """
        if await self.is_ready():
            logger.warning(
                "Controller already running", extra={"endpoint": self._client.base_url}
            )
            self._started = True
            return

        if self._launcher is None:
            raise HarnessError(
                f"Controller at {self._client.base_url} is not running and no launcher is configured"
            )

        logger.info("Starting controller", extra={"endpoint": self._client.base_url})
        await self._run(self._launcher.up)
        self._started = True
        self._launched = True

    async def wait_until_ready(
        self,
        cancel: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> PollResult:
        """Block until the controller reports READY.

        Raises:
            HarnessError: The controller is down or unknown and start() was not called.
            WaitTimeoutError: Not ready within the startup timeout.
            CancellationRequested: The cancel event was set.
        """
        first = await self.read_status()
        if first in (ControllerStatus.DOWN, ControllerStatus.UNKNOWN) and not self._started:
            raise HarnessError(
                f"Controller is {first.value}, neither starting nor running. Call start() first"
            )

        spec = WaitSpec(
            target=ControllerStatus.READY,
            pending={ControllerStatus.STARTING, ControllerStatus.DOWN},
            timeout_seconds=timeout_seconds or self._startup_timeout_seconds,
            poll_interval_seconds=self._poll_interval_seconds,
            implicit_pending={ControllerStatus.UNKNOWN},
        )

        async def probe() -> Observation:
            status = await self.read_status()
            return Observation(status, TrackedEntity(self._identity, status))

        logger.info(
            "Waiting for controller",
            extra={"endpoint": self._client.base_url, "timeout_seconds": spec.timeout_seconds},
        )
        result = await self._waiter.poll(probe, spec, cancel)
        logger.info(
            "Controller ready",
            extra={"endpoint": self._client.base_url, "probes": result.probes},
        )
        return result

    async def shutdown(self) -> None:
        """Stop a controller launched by start(). Idempotent."""
        if self._stopped or not self._launched or self._launcher is None:
            return
        self._stopped = True
        logger.info("Stopping controller", extra={"endpoint": self._client.base_url})
        await self._run(self._launcher.down)
