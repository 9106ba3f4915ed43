"""API-oriented transport over HTTPS (httpx).

Expects a device REST API with:
    GET  /api/v1/config                          -> running config (text)
    PUT  /api/v1/config                          -> replace config (text body)
    GET  /api/v1/state/interfaces/{name}         -> {"oper_status": "up"}
    GET  /api/v1/state/bgp/neighbors/{address}   -> {"state": "established"}

Paths can be overridden per device in ``options`` (config_path,
interface_path, bgp_path). 4xx responses other than auth are device-side
rejections; everything else that fails is a transport problem.
"""
import logging
from typing import Any, Optional

import httpx

from ..errors import ApplyError, TransportError
from ..utils.logging_config import timed
from .base import ApplyResult, Assertion, DeviceConfig

logger = logging.getLogger(__name__)

DEFAULT_PATHS = {
    "config_path": "/api/v1/config",
    "interface_path": "/api/v1/state/interfaces/{target}",
    "bgp_path": "/api/v1/state/bgp/neighbors/{target}",
}

REJECT_STATUSES = {400, 409, 422}
AUTH_STATUSES = {401, 403}


def _raise_for_status(response: httpx.Response, device: DeviceConfig, operation: str) -> None:
    """Translate HTTP failures into the pipeline's error taxonomy."""
    if response.is_success:
        return
    detail = response.text[:500]
    if response.status_code in AUTH_STATUSES:
        raise TransportError(
            f"{operation} on {device.device_id}: authentication failed ({response.status_code})",
            device_id=device.device_id,
        )
    if response.status_code in REJECT_STATUSES:
        raise ApplyError(
            f"{operation} on {device.device_id} rejected ({response.status_code}): {detail}",
            device_id=device.device_id,
            output=detail,
        )
    raise TransportError(
        f"{operation} on {device.device_id} failed ({response.status_code}): {detail}",
        device_id=device.device_id,
    )


class ApiTransport:
    """REST transport talking to the device itself."""

    family = "api"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # transport is injectable for tests (httpx.MockTransport)
        self._transport = transport

    def _client(self, device: DeviceConfig) -> httpx.AsyncClient:
        scheme = device.options.get("scheme", "https")
        base_url = device.options.get("base_url") or f"{scheme}://{device.host}:{device.port}"
        kwargs: dict[str, Any] = {
            "base_url": base_url,
            "timeout": device.timeout,
            "verify": device.verify_ssl,
        }
        if device.username:
            kwargs["auth"] = (device.username, device.get_password())
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    def _path(self, device: DeviceConfig, name: str, **kwargs: str) -> str:
        return device.options.get(name, DEFAULT_PATHS[name]).format(**kwargs)

    async def _request(self, device: DeviceConfig, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client(device) as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} on {device.device_id} timed out: {e}", device_id=device.device_id)
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path} on {device.device_id} failed: {e}", device_id=device.device_id)

    @timed("read_config")
    async def read_config(self, device: DeviceConfig) -> str:
        response = await self._request(device, "GET", self._path(device, "config_path"))
        _raise_for_status(response, device, "read_config")
        return response.text

    @timed("apply")
    async def apply(self, device: DeviceConfig, text: str) -> ApplyResult:
        response = await self._request(
            device,
            "PUT",
            self._path(device, "config_path"),
            content=text.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )
        _raise_for_status(response, device, "apply")
        return ApplyResult(success=True, output=response.text[:2000], changed=response.status_code != 304)

    @timed("check_assertions")
    async def check_assertions(self, device: DeviceConfig, assertions: list[Assertion]) -> bool:
        for assertion in assertions:
            if assertion.kind == "interface_up":
                path = self._path(device, "interface_path", target=assertion.target)
                field, expected = "oper_status", "up"
            elif assertion.kind == "bgp_established":
                path = self._path(device, "bgp_path", target=assertion.target)
                field, expected = "state", "established"
            else:
                logger.warning(f"Unsupported assertion kind for API transport: {assertion.kind}")
                return False

            response = await self._request(device, "GET", path)
            if response.status_code == 404:
                return False
            _raise_for_status(response, device, "check_assertions")
            try:
                value = str(response.json().get(field, "")).lower()
            except ValueError:
                return False
            if value != expected:
                logger.debug(f"{device.device_id}: {assertion.describe()} not yet true ({field}={value})")
                return False
        return True
