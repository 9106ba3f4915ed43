"""Controller-oriented transport (httpx).

The device is never contacted directly; a fabric controller mediates:
    GET  {controller}/api/devices/{id}/config            -> {"config": "..."}
    POST {controller}/api/devices/{id}/config            -> {"status": "applied"|"rejected", "errors": [...]}
    POST {controller}/api/devices/{id}/assertions        -> {"results": [{"kind", "target", "ok"}]}

``options``:
    controller_url: base URL of the controller (required)
    token_env: environment variable holding the bearer token
"""
import logging
from typing import Any, Optional

import httpx

from ..errors import ApplyError, TransportError
from ..utils.logging_config import timed
from .base import ApplyResult, Assertion, DeviceConfig

logger = logging.getLogger(__name__)


class ControllerTransport:
    """Pushes configuration through a controller API."""

    family = "controller"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self, device: DeviceConfig) -> httpx.AsyncClient:
        base_url = device.options.get("controller_url")
        if not base_url:
            raise TransportError(
                f"Device {device.device_id} has no controller_url configured",
                device_id=device.device_id,
            )
        headers = {"Accept": "application/json"}
        token = device.get_secret("token_env")
        if token:
            headers["Authorization"] = f"Bearer {token}"

        kwargs: dict[str, Any] = {
            "base_url": base_url,
            "headers": headers,
            "timeout": device.timeout,
            "verify": device.verify_ssl,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def _call(self, device: DeviceConfig, method: str, suffix: str, **kwargs: Any) -> dict[str, Any]:
        path = f"/api/devices/{device.device_id}/{suffix}"
        try:
            async with self._client(device) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"Controller call {method} {path} failed: {e}", device_id=device.device_id)

        if response.status_code in (401, 403) or response.status_code >= 500:
            raise TransportError(
                f"Controller call {method} {path} failed ({response.status_code})",
                device_id=device.device_id,
            )
        if response.status_code >= 400:
            raise ApplyError(
                f"Controller refused {method} {path} ({response.status_code}): {response.text[:500]}",
                device_id=device.device_id,
                output=response.text[:500],
            )
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Controller returned invalid JSON: {e}", device_id=device.device_id)

    @timed("read_config")
    async def read_config(self, device: DeviceConfig) -> str:
        data = await self._call(device, "GET", "config")
        return data.get("config", "")

    @timed("apply")
    async def apply(self, device: DeviceConfig, text: str) -> ApplyResult:
        data = await self._call(device, "POST", "config", json={"config": text})
        status = data.get("status", "")
        if status == "rejected":
            errors = data.get("errors", [])
            raise ApplyError(
                f"Controller rejected config for {device.device_id}: {'; '.join(errors) or 'no reason given'}",
                device_id=device.device_id,
                output="\n".join(errors),
            )
        if status != "applied":
            raise TransportError(
                f"Controller returned unexpected status '{status}' for {device.device_id}",
                device_id=device.device_id,
            )
        return ApplyResult(success=True, output=str(data.get("task_id", "")))

    @timed("check_assertions")
    async def check_assertions(self, device: DeviceConfig, assertions: list[Assertion]) -> bool:
        data = await self._call(
            device, "POST", "assertions",
            json={"assertions": [a.to_dict() for a in assertions]},
        )
        results = data.get("results", [])
        if len(results) != len(assertions):
            return False
        return all(r.get("ok") for r in results)
