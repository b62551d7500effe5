"""Binds the controller client to the engine's async mutate/probe functions.

ControllerClient is synchronous, so each call runs in the default
executor and the event loop stays free for cancellation signals.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.exceptions import ResourceNotFoundError

from .client import ControllerClient
from .orchestrator import LifecycleOrchestrator, Operation
from .policies import TransitionPolicies
from .probe import RemoteStateProbe
from .states import EntityIdentity, TrackedEntity
from .waiter import Clock, Sleeper, cancellable_sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeviceAdapter:
    """Async device accessors over a ControllerClient."""

    def __init__(self, client: ControllerClient) -> None:
        self._client = client

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

    async def read(self, identity: EntityIdentity) -> TrackedEntity | None:
        """Read one device. Not-found errors propagate for the probe to absorb."""
        raw = await self._run(self._client.get_device_by_mac, identity.scope, identity.key)
        return TrackedEntity.from_device(identity.scope, raw)

    async def adopt(self, identity: EntityIdentity, payload: Any = None) -> TrackedEntity | None:
        await self._run(self._client.adopt_device, identity.scope, identity.key)
        logger.info("Adopt requested", extra={"identity": str(identity)})
        return None

    async def update(
        self, identity: EntityIdentity, payload: dict[str, Any] | None = None
    ) -> TrackedEntity | None:
        """Update a device's settings.

        The controller addresses updates by its internal _id, so the device
        is looked up by MAC first.
        """
        current = await self.read(identity)
        device_id = current.entity_id if current else None
        if not device_id:
            raise ResourceNotFoundError(message=f"Device {identity} has no controller id")

        raw = await self._run(
            self._client.update_device, identity.scope, device_id, dict(payload or {})
        )
        logger.info(
            "Update requested",
            extra={"identity": str(identity), "fields": sorted((payload or {}).keys())},
        )
        return TrackedEntity.from_device(identity.scope, raw)

    async def forget(self, identity: EntityIdentity, payload: Any = None) -> TrackedEntity | None:
        await self._run(self._client.forget_device, identity.scope, identity.key)
        logger.info("Forget requested", extra={"identity": str(identity)})
        return None

    def mutators(self) -> dict[Operation, Callable[..., Any]]:
        return {
            Operation.ADOPT: self.adopt,
            Operation.UPDATE: self.update,
            Operation.FORGET: self.forget,
        }


def build_orchestrator(
    client: ControllerClient,
    policies: TransitionPolicies,
    *,
    clock: Clock = time.monotonic,
    sleep: Sleeper = cancellable_sleep,
) -> LifecycleOrchestrator:
    """Wire a LifecycleOrchestrator for devices managed through `client`."""
    adapter = DeviceAdapter(client)
    return LifecycleOrchestrator(
        adapter.mutators(),
        RemoteStateProbe(adapter.read),
        policies,
        clock=clock,
        sleep=sleep,
    )
