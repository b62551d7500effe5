"""State values and entity snapshots observed by the reconciliation engine.

The engine itself is generic over any hashable state value. This module
holds the engine-reserved ABSENT sentinel plus the two concrete state
families used in this project:

- DeviceState: numeric device states reported by the network controller
- ControllerStatus: readiness of the controller process itself
"""

from __future__ import annotations

import re
from collections.abc import Hashable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

# MAC addresses may arrive as aa:bb:cc:dd:ee:ff, AA-BB-..., or aabb.ccdd.eeff
MAC_ADDRESS_PATTERN = re.compile(
    r"^([0-9a-fA-F]{2}[:-]?){5}[0-9a-fA-F]{2}$|^([0-9a-fA-F]{4}\.){2}[0-9a-fA-F]{4}$"
)


class Sentinel(Enum):
    """Engine-reserved state values that never collide with domain states."""

    ABSENT = "absent"

    def __repr__(self) -> str:
        return self.name


# Entity was not observed by a probe
ABSENT = Sentinel.ABSENT

State = Hashable


class DeviceState(IntEnum):
    """Device states as reported by the controller's `state` field."""

    UNKNOWN = 0
    CONNECTED = 1
    PENDING = 2
    FIRMWARE_MISMATCH = 3
    UPGRADING = 4
    PROVISIONING = 5
    HEARTBEAT_MISSED = 6
    ADOPTING = 7
    DELETING = 8
    INFORM_ERROR = 9
    ADOPT_FAILED = 10
    ISOLATED = 11

    @classmethod
    def parse(cls, value: Any) -> DeviceState:
        """Map a raw state code to a DeviceState, UNKNOWN for anything unrecognized."""
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.UNKNOWN


class ControllerStatus(str, Enum):
    """Readiness of the controller as seen through its /status endpoint."""

    UNKNOWN = "unknown"
    DOWN = "down"
    STARTING = "starting"
    READY = "ready"


def clean_mac(mac: str) -> str:
    """Normalize a MAC address to lowercase colon-separated form.

    Raises:
        ValueError: If the value is not a MAC address.
    """
    value = mac.strip()
    if not MAC_ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid MAC address: {mac!r}")
    digits = re.sub(r"[^0-9a-fA-F]", "", value).lower()
    return ":".join(digits[i : i + 2] for i in range(0, 12, 2))


@dataclass(frozen=True)
class EntityIdentity:
    """Identity of a tracked entity: a scoping key plus a natural key."""

    scope: str
    key: str

    def __post_init__(self) -> None:
        if not self.scope:
            raise ValueError("scope cannot be empty")
        if not self.key:
            raise ValueError("key cannot be empty")

    @classmethod
    def for_device(cls, site: str, mac: str) -> EntityIdentity:
        return cls(scope=site, key=clean_mac(mac))

    def __str__(self) -> str:
        return f"{self.scope}/{self.key}"


@dataclass
class TrackedEntity:
    """Snapshot of an entity as returned by one backend read.

    Snapshots are rebuilt on every probe and never reused across polls.
    """

    identity: EntityIdentity
    state: State
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_id(self) -> str | None:
        """Backend-assigned identifier, if the backend reported one."""
        value = self.attributes.get("_id")
        return str(value) if value else None

    @classmethod
    def from_device(cls, site: str, raw: dict[str, Any]) -> TrackedEntity:
        """Build a snapshot from a raw device document."""
        return cls(
            identity=EntityIdentity.for_device(site, raw["mac"]),
            state=DeviceState.parse(raw.get("state")),
            attributes=dict(raw),
        )
