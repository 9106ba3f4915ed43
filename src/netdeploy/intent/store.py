"""Read-only client for the external intent store.

The pipeline never writes intent. The bundled YAML store reads either of:

    <intent_dir>/<device_id>/<version>.yaml   # versioned history
    <intent_dir>/<device_id>.yaml             # single version (its 'version' key)

Versions sort numerically when they are numbers, lexically otherwise; the
greatest one is "latest".
"""
import logging
from pathlib import Path
from typing import Optional, Protocol

import yaml

from ..errors import IntentError
from .schema import IntentRecord, parse_intent

logger = logging.getLogger(__name__)


class IntentStore(Protocol):
    """Versioned read interface of the intent store."""

    def get_intent(self, device_id: str, version: Optional[str] = None) -> IntentRecord:
        ...

    def list_versions(self, device_id: str) -> list[str]:
        ...

    def list_devices(self) -> list[str]:
        ...


def _version_key(version: str) -> tuple:
    return (0, int(version), "") if version.isdigit() else (1, 0, version)


class YamlIntentStore:
    """Intent store backed by a directory of YAML files."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def list_devices(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        devices = {p.stem for p in self.base_dir.glob("*.yaml")}
        devices.update(p.name for p in self.base_dir.iterdir() if p.is_dir())
        return sorted(devices)

    def list_versions(self, device_id: str) -> list[str]:
        device_dir = self.base_dir / device_id
        if device_dir.is_dir():
            return sorted((p.stem for p in device_dir.glob("*.yaml")), key=_version_key)

        flat = self.base_dir / f"{device_id}.yaml"
        if flat.exists():
            data = self._load(flat, device_id)
            return [str(data.get("version", "1"))]
        return []

    def get_intent(self, device_id: str, version: Optional[str] = None) -> IntentRecord:
        """Read one versioned intent snapshot.

        Raises:
            IntentError: If the device or version does not exist or cannot be parsed
        """
        versions = self.list_versions(device_id)
        if not versions:
            raise IntentError(f"No intent found for device {device_id}", device_id=device_id)

        version = str(version) if version is not None else versions[-1]
        if version not in versions:
            raise IntentError(
                f"Intent version {version} not found for {device_id} (have: {', '.join(versions)})",
                device_id=device_id,
            )

        device_dir = self.base_dir / device_id
        if device_dir.is_dir():
            data = self._load(device_dir / f"{version}.yaml", device_id)
            # The file name is authoritative for versioned history
            data["version"] = version
        else:
            data = self._load(self.base_dir / f"{device_id}.yaml", device_id)

        record = parse_intent(data, device_id=device_id, version=version)
        if record.device_id != device_id:
            raise IntentError(
                f"Intent file for {device_id} declares device {record.device_id}",
                device_id=device_id,
            )
        logger.debug(f"Loaded intent {device_id} v{record.version}")
        return record

    def _load(self, path: Path, device_id: str) -> dict:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise IntentError(f"Cannot read intent file {path}: {e}", device_id=device_id)
        if not isinstance(data, dict):
            raise IntentError(f"Intent file {path} is not a mapping", device_id=device_id)
        return data


class MemoryIntentStore:
    """Intent store holding records in memory (fixtures, embedding)."""

    def __init__(self, records: Optional[list[IntentRecord]] = None):
        self._records: dict[str, dict[str, IntentRecord]] = {}
        for record in records or []:
            self.add(record)

    def add(self, record: IntentRecord) -> None:
        self._records.setdefault(record.device_id, {})[record.version] = record

    def list_devices(self) -> list[str]:
        return sorted(self._records)

    def list_versions(self, device_id: str) -> list[str]:
        return sorted(self._records.get(device_id, {}), key=_version_key)

    def get_intent(self, device_id: str, version: Optional[str] = None) -> IntentRecord:
        versions = self.list_versions(device_id)
        if not versions:
            raise IntentError(f"No intent found for device {device_id}", device_id=device_id)
        version = str(version) if version is not None else versions[-1]
        if version not in self._records[device_id]:
            raise IntentError(f"Intent version {version} not found for {device_id}", device_id=device_id)
        return self._records[device_id][version]
