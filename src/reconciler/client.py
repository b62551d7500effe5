"""Network controller REST client built on the azure-core HTTP pipeline.

The pipeline carries no retry policy: every method performs exactly one
request. Retry and polling decisions belong to the engine.

Controller responses look like:

    {"meta": {"rc": "ok"}, "data": [...]}
    {"meta": {"rc": "error", "msg": "api.err.DeviceBusy"}, "data": []}

Errors are raised as ControllerError with `msg` as the structured
error_code. HTTP 404 and empty lookups raise ResourceNotFoundError.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import ResourceNotFoundError
from azure.core.pipeline.policies import (
    AzureKeyCredentialPolicy,
    HeadersPolicy,
    HTTPPolicy,
    SansIOHTTPPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest, HttpResponse

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS, EngineConfig
from .errors import ControllerError
from .states import clean_mac

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-KEY"
USER_AGENT = "unifi-reconciler/0.1.0"

HTTP_NOT_FOUND = 404
HTTP_BAD_REQUEST = 400


def _body(response: HttpResponse) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class ControllerClient:
    """Thin synchronous client for the device endpoints of a network controller.

    Usage:
        with ControllerClient("https://controller:8443", api_key="...") as client:
            device = client.get_device_by_mac("default", "aa:bb:cc:dd:ee:ff")
            client.adopt_device("default", device["mac"])
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        verify_tls: bool = True,
        timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Controller base URL (e.g. https://localhost:8443).
            api_key: API key sent in the X-API-KEY header.
            verify_tls: Verify the controller's TLS certificate.
            timeout_seconds: Connection and read timeout per request.
            **kwargs: Passed to PipelineClient (e.g. a custom transport).
        """
        self._base_url = base_url.rstrip("/")
        self._verify_tls = verify_tls
        self._timeout_seconds = timeout_seconds

        policies: list[HTTPPolicy | SansIOHTTPPolicy] = [
            HeadersPolicy({"Accept": "application/json"}),
            UserAgentPolicy(base_user_agent=USER_AGENT),
        ]
        if api_key:
            policies.append(AzureKeyCredentialPolicy(AzureKeyCredential(api_key), API_KEY_HEADER))

        self._client: PipelineClient = PipelineClient(
            base_url=self._base_url, policies=policies, **kwargs
        )

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs: Any) -> ControllerClient:
        return cls(
            config.controller_url,
            api_key=config.api_key,
            verify_tls=not config.insecure,
            timeout_seconds=config.request_timeout_seconds,
            **kwargs,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ControllerClient:
        return self

    def __exit__(self, *exc_details: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _send(self, method: str, path: str, *, json: Any = None) -> HttpResponse:
        request = HttpRequest(method, path, json=json)
        request.url = self._client.format_url(request.url)
        return self._client.send_request(
            request,
            connection_verify=self._verify_tls,
            connection_timeout=self._timeout_seconds,
            read_timeout=self._timeout_seconds,
        )

    def _call(self, method: str, path: str, *, json: Any = None) -> list[Any]:
        """Send one request and unwrap the controller envelope.

        Returns:
            The `data` list of the response.

        Raises:
            ResourceNotFoundError: HTTP 404.
            ControllerError: Any controller-reported or HTTP error.
        """
        response = self._send(method, path, json=json)
        body = _body(response)
        meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
        error_code = meta.get("msg") if meta.get("rc") == "error" else None

        if response.status_code == HTTP_NOT_FOUND and not error_code:
            raise ResourceNotFoundError(
                message=f"{method} {path} returned 404", response=response
            )

        if response.status_code >= HTTP_BAD_REQUEST or error_code:
            logger.debug(
                "Controller returned an error",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "error_code": error_code,
                },
            )
            raise ControllerError(
                message=f"{method} {path} failed ({response.status_code}): {error_code or 'no error code'}",
                response=response,
                error_code=error_code,
            )

        data = body.get("data", [])
        return data if isinstance(data, list) else [data]

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def get_device_by_mac(self, site: str, mac: str) -> dict[str, Any]:
        """Read one device by MAC address.

        Raises:
            ResourceNotFoundError: No device with that MAC in the site.
            ControllerError: The controller rejected the request.
        """
        mac = clean_mac(mac)
        data = self._call("GET", f"/api/s/{site}/stat/device/{mac}")
        for item in data:
            if isinstance(item, dict) and str(item.get("mac", "")).lower() == mac:
                return item
        raise ResourceNotFoundError(message=f"Device {mac} not found in site '{site}'")

    def adopt_device(self, site: str, mac: str) -> None:
        """Ask the controller to adopt a pending device."""
        self._call("POST", f"/api/s/{site}/cmd/devmgr", json={"cmd": "adopt", "mac": clean_mac(mac)})

    def update_device(self, site: str, device_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Update a device's configuration.

        Returns:
            The updated device document.
        """
        data = self._call("PUT", f"/api/s/{site}/rest/device/{device_id}", json=payload)
        if not data or not isinstance(data[0], dict):
            raise ResourceNotFoundError(message=f"Device {device_id} not returned after update")
        return data[0]

    def forget_device(self, site: str, mac: str) -> None:
        """Remove a device from the controller's inventory."""
        self._call(
            "POST",
            f"/api/s/{site}/cmd/sitemgr",
            json={"cmd": "delete-device", "macs": [clean_mac(mac)]},
        )

    # -------------------------------------------------------------------------
    # Controller
    # -------------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        """Read the controller's /status document (no authentication needed).

        Returns:
            The `meta` mapping, e.g. {"rc": "ok", "up": true, "server_version": "..."}.
        """
        response = self._send("GET", "/status")
        if response.status_code >= HTTP_BAD_REQUEST:
            raise ControllerError(
                message=f"GET /status failed ({response.status_code})", response=response
            )
        meta = _body(response).get("meta")
        return meta if isinstance(meta, dict) else {}
