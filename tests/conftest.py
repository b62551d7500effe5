"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for controller_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from controller_mock import FakeClock, MockControllerClient, MockControllerState  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def controller_state() -> MockControllerState:
    return MockControllerState()


@pytest.fixture
def controller(controller_state: MockControllerState) -> MockControllerClient:
    return MockControllerClient(controller_state)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every engine environment variable."""
    for key in (
        "UNIFI_API",
        "UNIFI_SITE",
        "UNIFI_API_KEY",
        "UNIFI_INSECURE",
        "REQUEST_TIMEOUT",
        "POLL_INTERVAL",
        "NOT_FOUND_GRACE",
        "FORGET_ABSENCE_GRACE",
        "ADOPT_TIMEOUT",
        "UPDATE_TIMEOUT",
        "FORGET_TIMEOUT",
        "MUTATE_RETRY_BUDGET",
        "RETRY_BACKOFF",
        "HARNESS_STARTUP_TIMEOUT",
        "POLICIES_FILE",
    ):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch
