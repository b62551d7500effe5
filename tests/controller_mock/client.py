"""Drop-in stand-in for ControllerClient backed by MockControllerState."""

from __future__ import annotations

from typing import Any

from azure.core.exceptions import ResourceNotFoundError

from reconciler.states import DeviceState, clean_mac

from .state import GONE, MockControllerState, unknown_device_error


class MockControllerClient:
    """Implements the ControllerClient surface against in-memory state.

    Every call is counted in state.calls and can fail through
    state.inject_error(method, error).
    """

    def __init__(self, state: MockControllerState | None = None, base_url: str = "https://mock:8443") -> None:
        self.state = state or MockControllerState()
        self.base_url = base_url
        self.closed = False
        self.updates: list[tuple[str, str, dict[str, Any]]] = []

    def close(self) -> None:
        self.closed = True

    def get_device_by_mac(self, site: str, mac: str) -> dict[str, Any]:
        self.state.record_call("get_device_by_mac")
        observed = self.state.next_observed(site, mac)
        device = self.state.get_device(site, mac)
        if observed is GONE or device is None:
            raise ResourceNotFoundError(message=f"Device {clean_mac(mac)} not found in site '{site}'")
        return device.to_raw(observed)

    def adopt_device(self, site: str, mac: str) -> None:
        self.state.record_call("adopt_device")
        if self.state.get_device(site, mac) is None:
            raise unknown_device_error()
        self.state.script(site, mac, self.state.on_adopt)

    def update_device(self, site: str, device_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.state.record_call("update_device")
        self.updates.append((site, device_id, dict(payload)))
        device = self.state.find_by_id(site, device_id)
        if device is None:
            raise ResourceNotFoundError(message=f"Device {device_id} not found")
        if "name" in payload:
            device.name = payload["name"]
        self.state.script(site, device.mac, self.state.on_update)
        return device.to_raw(DeviceState.PROVISIONING)

    def forget_device(self, site: str, mac: str) -> None:
        self.state.record_call("forget_device")
        if self.state.get_device(site, mac) is None:
            raise unknown_device_error()
        self.state.script(site, mac, self.state.on_forget)

    def get_status(self) -> dict[str, Any]:
        self.state.record_call("get_status")
        status = self.state.next_status()
        if isinstance(status, BaseException):
            raise status
        return dict(status)
