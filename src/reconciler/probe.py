"""Single-read state probe.

A probe performs exactly one backend read and reports what it saw. It
never retries: retry and absorption policy live in the waiter and the
orchestrator. "Not found" is not an error here; it is reported as the
ABSENT state so that absence handling is uniform downstream.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .errors import is_not_found
from .states import ABSENT, EntityIdentity, State, TrackedEntity

logger = logging.getLogger(__name__)

# Async accessor performing one backend read. Returning None means "not found".
ReadFunc = Callable[[EntityIdentity], Awaitable[TrackedEntity | None]]


@dataclass(frozen=True)
class Observation:
    """Result of one probe: the observed state and the fresh snapshot (if any)."""

    state: State
    entity: TrackedEntity | None = None

    @property
    def absent(self) -> bool:
        return self.state is ABSENT


class RemoteStateProbe:
    """Reads an entity's current state through a caller-supplied accessor."""

    def __init__(self, read: ReadFunc) -> None:
        self._read = read

    async def probe(self, identity: EntityIdentity) -> Observation:
        """Read the entity once.

        Returns:
            Observation with the entity's state, or ABSENT if not found.

        Raises:
            Exception: Any backend error other than not-found, unchanged.
        """
        try:
            entity = await self._read(identity)
        except Exception as e:
            if is_not_found(e):
                logger.debug(
                    "Entity not observed",
                    extra={"identity": str(identity), "error_type": type(e).__name__},
                )
                return Observation(ABSENT)
            raise

        if entity is None:
            return Observation(ABSENT)
        return Observation(entity.state, entity)

    def bind(self, identity: EntityIdentity) -> Callable[[], Awaitable[Observation]]:
        """Return a zero-argument probe function for one identity."""

        async def probe_fn() -> Observation:
            return await self.probe(identity)

        return probe_fn
