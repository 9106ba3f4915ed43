"""Transport adapter variants for the supported device families."""
from .base import (
    ApplyResult,
    Assertion,
    DeviceConfig,
    TransportAdapter,
)
from .api import ApiTransport
from .cli import CliTransport
from .controller import ControllerTransport
from .simulated import SimulatedDevice, SimulatedTransport

__all__ = [
    "ApplyResult",
    "Assertion",
    "DeviceConfig",
    "TransportAdapter",
    "ApiTransport",
    "CliTransport",
    "ControllerTransport",
    "SimulatedDevice",
    "SimulatedTransport",
    "TRANSPORT_TYPES",
    "create_transport",
    "create_device_config",
]

# Transport type registry
TRANSPORT_TYPES = {
    "cli": CliTransport,
    "api": ApiTransport,
    "controller": ControllerTransport,
    "simulated": SimulatedTransport,
}


def create_transport(transport_type: str) -> TransportAdapter:
    """Factory function to create transport adapters."""
    transport_type = transport_type.lower()
    if transport_type not in TRANSPORT_TYPES:
        raise ValueError(f"Unknown device type: {transport_type}")
    return TRANSPORT_TYPES[transport_type]()


def create_device_config(device_id: str, config: dict) -> DeviceConfig:
    """Build a DeviceConfig; unknown keys land in ``options``."""
    known = set(DeviceConfig.__dataclass_fields__) - {"device_id", "options"}
    kwargs = {k: v for k, v in config.items() if k in known}
    options = dict(config.get("options", {}))
    options.update({k: v for k, v in config.items() if k not in known and k != "options"})
    if "type" not in kwargs:
        raise ValueError(f"Device {device_id} has no type")
    return DeviceConfig(device_id=device_id, options=options, **kwargs)
