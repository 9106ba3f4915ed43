"""Transport adapter contract shared by all device families.

Device families (CLI-oriented, API-oriented, controller-oriented) are
variants that satisfy the TransportAdapter capability set. They do not share
a base class; a new family adds a variant and registers it in
``netdeploy.devices.TRANSPORT_TYPES``.
"""
import os
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Transport type -> template/grammar family when not set explicitly
DEFAULT_PLATFORMS = {
    "cli": "cli",
    "api": "api",
    "controller": "controller",
    "simulated": "cli",
}


@dataclass
class DeviceConfig:
    """Configuration for a managed device."""
    device_id: str
    type: str
    host: str = ""
    name: str = ""
    platform: Optional[str] = None
    port: int = 22
    username: str = ""
    password: Optional[str] = None
    password_env: str = "NETWORK_PASSWORD"
    timeout: int = 30
    verify_ssl: bool = True
    template: Optional[str] = None
    site: Optional[str] = None
    # Overrides for show/config commands, URL paths, simulator knobs, ...
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            self.name = self.device_id
        if not self.platform:
            self.platform = DEFAULT_PLATFORMS.get(self.type, self.type)

    def get_password(self) -> str:
        """Get password from config or the environment secret store."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")

    def get_secret(self, env_key: str, default: str = "") -> str:
        """Read another named secret (API tokens) from the environment."""
        name = self.options.get(env_key)
        if not name:
            return default
        return os.environ.get(name, default)


@dataclass(frozen=True)
class Assertion:
    """An operational expectation checked after apply."""
    kind: str    # interface_up, bgp_established
    target: str  # interface name or peer address

    def describe(self) -> str:
        if self.kind == "interface_up":
            return f"interface {self.target} up"
        if self.kind == "bgp_established":
            return f"peer {self.target} established"
        return f"{self.kind} {self.target}"

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "target": self.target}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "Assertion":
        return cls(kind=data["kind"], target=data["target"])


@dataclass
class ApplyResult:
    """Outcome of pushing configuration text to a device."""
    success: bool
    output: str = ""
    changed: bool = True


@runtime_checkable
class TransportAdapter(Protocol):
    """Capability set every device family variant provides."""

    family: str

    async def read_config(self, device: DeviceConfig) -> str:
        """Return the device's current configuration text (read-only)."""
        ...

    async def apply(self, device: DeviceConfig, text: str) -> ApplyResult:
        """Replace the device configuration with text.

        Raises:
            TransportError: connectivity/auth trouble (retryable)
            ApplyError: the device rejected the configuration
        """
        ...

    async def check_assertions(self, device: DeviceConfig, assertions: list[Assertion]) -> bool:
        """True when every assertion currently holds."""
        ...
