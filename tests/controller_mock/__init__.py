"""Network controller mock for integration testing.

An in-memory controller that the engine can drive without a real
controller process.

Key Features:
- Device inventory with scripted state sequences per device
- Configurable state sequences after adopt, update and forget
- Error injection per client method
- Scripted /status responses and a launcher stand-in for the harness

Usage:
    from controller_mock import MockControllerClient, MockControllerState

    state = MockControllerState()
    state.add_device("aa:bb:cc:dd:ee:ff", DeviceState.PENDING)
    client = MockControllerClient(state)

    orchestrator = build_orchestrator(client, policies, clock=clock, sleep=clock.sleep)
    await orchestrator.transition(identity, Operation.ADOPT)

    assert state.call_count("adopt_device") == 1
"""

from .client import MockControllerClient
from .clock import FakeClock
from .launcher import MockLauncher
from .state import (
    GONE,
    MockControllerState,
    MockDevice,
    busy_error,
    connection_error,
    fatal_error,
    unknown_device_error,
)

__all__ = [
    "GONE",
    "FakeClock",
    "MockControllerClient",
    "MockControllerState",
    "MockDevice",
    "MockLauncher",
    "busy_error",
    "connection_error",
    "fatal_error",
    "unknown_device_error",
]
