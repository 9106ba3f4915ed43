"""Device inventory management from YAML configuration."""
import logging
from pathlib import Path
from typing import Optional
import os

import yaml

from ..devices import create_device_config, create_transport, DeviceConfig, TransportAdapter

logger = logging.getLogger(__name__)


class DeviceInventory:
    """Manages the device inventory loaded from YAML config.

    ```yaml
    defaults:
      username: netops
      password_env: NETWORK_PASSWORD
    devices:
      core-1:
        type: cli
        host: 10.0.0.1
        platform: cli
      leaf-1:
        type: api
        host: 10.0.0.11
        port: 443
    groups:
      core:
        - core-1
    ```

    Transport adapters are shared per type; the adapters themselves are
    stateless per device apart from the simulated family.
    """

    def __init__(self, config_path: Optional[str] = None, data: Optional[dict] = None):
        self.config_path = None
        self._config: dict = {}
        self._transports: dict[str, TransportAdapter] = {}
        if data is not None:
            self._config = data
            self._apply_defaults()
        else:
            self.config_path = config_path or os.environ.get("NETDEPLOY_INVENTORY") or self._find_config()
            self._load_config()

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceInventory":
        """Build an inventory from an already-parsed mapping."""
        return cls(data=data)

    def _find_config(self) -> str:
        """Find the devices.yaml config file."""
        search_paths = [
            Path.cwd() / "configs" / "devices.yaml",
            Path.cwd() / "devices.yaml",
            Path.home() / ".config" / "netdeploy" / "devices.yaml",
            Path("/etc/netdeploy/devices.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find devices.yaml. Create one in ./configs/devices.yaml"
        )

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            self._config = yaml.safe_load(f) or {}
        self._apply_defaults()

    def _apply_defaults(self) -> None:
        defaults = self._config.get("defaults", {})
        for device_id, device_config in self._config.get("devices", {}).items():
            for key, value in defaults.items():
                if key not in device_config:
                    device_config[key] = value

        self._validate_groups()

    def get_device_ids(self) -> list[str]:
        """Get all device IDs."""
        return list(self._config.get("devices", {}).keys())

    def get_device_config(self, device_id: str) -> DeviceConfig:
        """Get the typed config for a device."""
        devices = self._config.get("devices", {})
        if device_id not in devices:
            raise KeyError(f"Unknown device: {device_id}")
        return create_device_config(device_id, devices[device_id])

    def get_transport(self, device_id: str) -> TransportAdapter:
        """Get the shared transport adapter for a device's type."""
        device_type = self.get_device_config(device_id).type
        if device_type not in self._transports:
            self._transports[device_type] = create_transport(device_type)
        return self._transports[device_type]

    def set_transport(self, device_type: str, transport: TransportAdapter) -> None:
        """Install a specific adapter instance for a device type."""
        self._transports[device_type] = transport

    # === Group Management ===

    def _validate_groups(self) -> None:
        """Validate that all group members reference valid devices."""
        groups = self._config.get("groups", {})
        devices = self._config.get("devices", {})

        for group_name, members in groups.items():
            if not isinstance(members, list):
                logger.warning(f"Group '{group_name}' should be a list of device IDs")
                continue
            for device_id in members:
                if device_id not in devices:
                    logger.warning(
                        f"Group '{group_name}' references unknown device: {device_id}"
                    )

    def get_group_names(self) -> list[str]:
        """Get list of all group names."""
        return list(self._config.get("groups", {}).keys())

    def get_group_members(self, group_name: str) -> list[str]:
        """Get device IDs in a group.

        Raises:
            KeyError: If group doesn't exist
        """
        groups = self._config.get("groups", {})
        if group_name not in groups:
            raise KeyError(f"Unknown group: {group_name}")
        return list(groups[group_name])

    def resolve_targets(self, device_ids: Optional[list[str]] = None, group: Optional[str] = None) -> list[str]:
        """Expand --device/--group selections into a de-duplicated, ordered list."""
        targets: list[str] = []
        for device_id in device_ids or []:
            self.get_device_config(device_id)  # raises on unknown devices
            if device_id not in targets:
                targets.append(device_id)
        if group:
            for device_id in self.get_group_members(group):
                if device_id not in targets:
                    targets.append(device_id)
        if not device_ids and not group:
            targets = self.get_device_ids()
        return targets
