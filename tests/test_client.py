"""Tests for the controller REST client."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure.core.pipeline.policies import AzureKeyCredentialPolicy, RetryPolicy

from reconciler.client import API_KEY_HEADER, ControllerClient
from reconciler.config import EngineConfig
from reconciler.errors import ControllerError, ErrorKind, classify

MAC = "aa:bb:cc:dd:ee:ff"


class FakeResponse:
    """Minimal stand-in for azure.core.rest.HttpResponse."""

    def __init__(self, status_code: int = 200, body: Any = None, headers: dict[str, str] | None = None) -> None:
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        self.headers = headers or {}
        self._body = body

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def text(self) -> str:
        return json.dumps(self._body) if self._body is not None else ""


def ok(data: list[Any] | None = None) -> FakeResponse:
    return FakeResponse(200, {"meta": {"rc": "ok"}, "data": data or []})


def controller_error(code: str, status: int = 400) -> FakeResponse:
    return FakeResponse(status, {"meta": {"rc": "error", "msg": code}, "data": []})


@pytest.fixture
def client() -> ControllerClient:
    client = ControllerClient("https://controller:8443/", api_key="secret", verify_tls=False, timeout_seconds=7)
    client._client.send_request = MagicMock(return_value=ok())  # type: ignore[method-assign]
    return client


def sent_request(client: ControllerClient) -> Any:
    return client._client.send_request.call_args.args[0]  # type: ignore[attr-defined]


class TestPipeline:
    """Tests for pipeline construction."""

    def test_api_key_policy_and_no_retry(self) -> None:
        with patch("reconciler.client.PipelineClient") as pipeline_client:
            ControllerClient("https://controller:8443", api_key="secret")

        policies = pipeline_client.call_args.kwargs["policies"]
        assert any(isinstance(p, AzureKeyCredentialPolicy) for p in policies)
        assert not any(isinstance(p, RetryPolicy) for p in policies)
        assert API_KEY_HEADER == "X-API-KEY"

    def test_no_key_policy_without_api_key(self) -> None:
        with patch("reconciler.client.PipelineClient") as pipeline_client:
            ControllerClient("https://controller:8443")

        policies = pipeline_client.call_args.kwargs["policies"]
        assert not any(isinstance(p, AzureKeyCredentialPolicy) for p in policies)

    def test_from_config(self) -> None:
        config = EngineConfig(
            controller_url="https://controller:8443",
            api_key="secret",
            insecure=True,
            request_timeout_seconds=9,
        )
        client = ControllerClient.from_config(config)
        assert client.base_url == "https://controller:8443"
        assert client._verify_tls is False
        assert client._timeout_seconds == 9

    def test_transport_options(self, client: ControllerClient) -> None:
        client.adopt_device("default", MAC)
        kwargs = client._client.send_request.call_args.kwargs  # type: ignore[attr-defined]
        assert kwargs["connection_verify"] is False
        assert kwargs["connection_timeout"] == 7
        assert kwargs["read_timeout"] == 7


class TestDevices:
    """Tests for device endpoints."""

    def test_get_device_by_mac(self, client: ControllerClient) -> None:
        device = {"_id": "abc", "mac": MAC, "state": 1}
        client._client.send_request.return_value = ok([device])  # type: ignore[attr-defined]

        assert client.get_device_by_mac("default", "AA-BB-CC-DD-EE-FF") == device

        request = sent_request(client)
        assert request.method == "GET"
        assert request.url == f"https://controller:8443/api/s/default/stat/device/{MAC}"

    def test_get_device_empty_is_not_found(self, client: ControllerClient) -> None:
        with pytest.raises(ResourceNotFoundError):
            client.get_device_by_mac("default", MAC)

    def test_get_device_other_mac_is_not_found(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = ok([{"mac": "11:22:33:44:55:66"}])  # type: ignore[attr-defined]
        with pytest.raises(ResourceNotFoundError):
            client.get_device_by_mac("default", MAC)

    def test_http_404_is_not_found(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = FakeResponse(404)  # type: ignore[attr-defined]
        with pytest.raises(ResourceNotFoundError):
            client.get_device_by_mac("default", MAC)

    def test_adopt_device(self, client: ControllerClient) -> None:
        client.adopt_device("lab", MAC.upper())

        request = sent_request(client)
        assert request.method == "POST"
        assert request.url.endswith("/api/s/lab/cmd/devmgr")
        assert json.loads(request.content) == {"cmd": "adopt", "mac": MAC}

    def test_update_device(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = ok([{"_id": "abc", "mac": MAC, "name": "ap"}])  # type: ignore[attr-defined]

        result = client.update_device("default", "abc", {"name": "ap"})

        assert result["name"] == "ap"
        request = sent_request(client)
        assert request.method == "PUT"
        assert request.url.endswith("/api/s/default/rest/device/abc")
        assert json.loads(request.content) == {"name": "ap"}

    def test_forget_device(self, client: ControllerClient) -> None:
        client.forget_device("default", MAC)

        request = sent_request(client)
        assert request.url.endswith("/api/s/default/cmd/sitemgr")
        assert json.loads(request.content) == {"cmd": "delete-device", "macs": [MAC]}

    def test_invalid_mac_rejected_before_request(self, client: ControllerClient) -> None:
        with pytest.raises(ValueError):
            client.adopt_device("default", "not-a-mac")
        client._client.send_request.assert_not_called()  # type: ignore[attr-defined]


class TestErrors:
    """Tests for controller error mapping."""

    def test_busy_error_code(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = controller_error("api.err.DeviceBusy")  # type: ignore[attr-defined]

        with pytest.raises(ControllerError) as exc_info:
            client.adopt_device("default", MAC)

        assert exc_info.value.error_code == "api.err.DeviceBusy"
        assert exc_info.value.status_code == 400
        assert classify(exc_info.value).kind == ErrorKind.RETRYABLE

    def test_error_envelope_with_http_200(self, client: ControllerClient) -> None:
        response = FakeResponse(200, {"meta": {"rc": "error", "msg": "api.err.UnknownDevice"}})
        client._client.send_request.return_value = response  # type: ignore[attr-defined]

        with pytest.raises(ControllerError) as exc_info:
            client.forget_device("default", MAC)

        assert classify(exc_info.value).kind == ErrorKind.IGNORABLE

    def test_404_with_error_code_keeps_code(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = controller_error("api.err.NoSiteContext", 404)  # type: ignore[attr-defined]

        with pytest.raises(ControllerError) as exc_info:
            client.get_device_by_mac("nosuchsite", MAC)

        assert exc_info.value.error_code == "api.err.NoSiteContext"

    def test_server_error_without_body(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = FakeResponse(502)  # type: ignore[attr-defined]

        with pytest.raises(ControllerError) as exc_info:
            client.adopt_device("default", MAC)

        assert exc_info.value.error_code is None
        assert classify(exc_info.value).kind == ErrorKind.FATAL

    def test_too_many_requests_carries_retry_after(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = FakeResponse(429, None, {"Retry-After": "3"})  # type: ignore[attr-defined]

        with pytest.raises(ControllerError) as exc_info:
            client.adopt_device("default", MAC)

        classified = classify(exc_info.value)
        assert classified.kind == ErrorKind.RETRYABLE
        assert classified.retry_after == 3.0


class TestStatus:
    """Tests for the /status endpoint."""

    def test_get_status(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = FakeResponse(  # type: ignore[attr-defined]
            200, {"meta": {"rc": "ok", "up": True, "server_version": "9.0.114"}}
        )

        assert client.get_status()["up"] is True
        assert sent_request(client).url == "https://controller:8443/status"

    def test_get_status_unparseable(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = FakeResponse(200, None)  # type: ignore[attr-defined]
        assert client.get_status() == {}

    def test_get_status_error(self, client: ControllerClient) -> None:
        client._client.send_request.return_value = FakeResponse(503)  # type: ignore[attr-defined]
        with pytest.raises(ControllerError):
            client.get_status()
