"""State store for baselines, job records, device faults and drift reports.

Handles:
- Versioned per-device baselines with history
- Job records (JSON), kept after they reach a terminal state
- Persisted device faults after a failed rollback
- Cross-process deploy lock files and their owning job
- Last drift report per device
"""
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from filelock import FileLock

from ..errors import BaselineLockError

logger = logging.getLogger(__name__)

# Default state directory
DEFAULT_STATE_DIR = Path.home() / ".netdeploy" / "state"


def _atomic_write(path: Path, text: str) -> None:
    """Write via a temp file and rename so readers never see partial files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


@dataclass
class Baseline:
    """Last committed configuration for a device."""
    device_id: str
    version: int
    job_id: str
    rendered: dict[str, Any]  # RenderedConfig.to_dict()
    assertions: list[dict[str, str]] = field(default_factory=list)
    committed_at: Optional[datetime] = None

    @property
    def content(self) -> str:
        return self.rendered["content"]

    @property
    def content_hash(self) -> str:
        return self.rendered["content_hash"]

    def to_yaml(self) -> str:
        """Convert to YAML string with metadata header."""
        data = {
            "device_id": self.device_id,
            "version": self.version,
            "job_id": self.job_id,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "assertions": self.assertions,
            "rendered": self.rendered,
        }
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "Baseline":
        """Parse from YAML string."""
        data = yaml.safe_load(yaml_str) or {}
        committed_at = None
        if data.get("committed_at"):
            try:
                committed_at = datetime.fromisoformat(data["committed_at"])
            except (ValueError, TypeError):
                pass
        return cls(
            device_id=data["device_id"],
            version=int(data["version"]),
            job_id=data["job_id"],
            rendered=data["rendered"],
            assertions=data.get("assertions") or [],
            committed_at=committed_at,
        )


class StateStore:
    """
    Manages persisted pipeline state.

    Directory structure:
        <state_dir>/
        ├── baselines/
        │   └── <device_id>/
        │       ├── current.yaml     # Active baseline
        │       └── history/         # v0001.yaml, v0002.yaml, ...
        ├── jobs/                    # <job_id>.json
        ├── faults/                  # <device_id>.yaml
        ├── locks/                   # <device_id>.lock, <device_id>.owner
        └── drift_reports/           # <device_id>.json (latest)
    """

    def __init__(self, base_dir: Optional[Path] = None):
        """
        Initialize the state store.

        Args:
            base_dir: State directory (default: ~/.netdeploy/state)
        """
        self.base_dir = Path(base_dir) if base_dir else DEFAULT_STATE_DIR
        self._lock_owner: Optional[Callable[[str], Optional[str]]] = None
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        """Create directory structure if it doesn't exist."""
        for d in (self.baselines_dir, self.jobs_dir, self.faults_dir, self.locks_dir, self.drift_reports_dir):
            d.mkdir(parents=True, exist_ok=True)
        logger.debug(f"State store initialized at {self.base_dir}")

    @property
    def baselines_dir(self) -> Path:
        return self.base_dir / "baselines"

    @property
    def jobs_dir(self) -> Path:
        return self.base_dir / "jobs"

    @property
    def faults_dir(self) -> Path:
        return self.base_dir / "faults"

    @property
    def locks_dir(self) -> Path:
        return self.base_dir / "locks"

    @property
    def drift_reports_dir(self) -> Path:
        return self.base_dir / "drift_reports"

    def bind_lock_owner(self, owner_of: Callable[[str], Optional[str]]) -> None:
        """Register the lookup used to verify lock ownership on commit."""
        self._lock_owner = owner_of

    # === Device lock files ===

    def device_lock(self, device_id: str) -> FileLock:
        """
        Cross-process deploy lock for a device.

        Every StateStore sharing a state directory contends on the same file,
        so two netdeploy processes never deploy to one device concurrently.
        """
        return FileLock(str(self.locks_dir / f"{device_id}.lock"))

    def set_lock_owner(self, device_id: str, job_id: Optional[str]) -> None:
        """Record which job holds the device lock file (None clears it)."""
        path = self.locks_dir / f"{device_id}.owner"
        if job_id is None:
            path.unlink(missing_ok=True)
        else:
            _atomic_write(path, job_id)

    def get_lock_owner(self, device_id: str) -> Optional[str]:
        path = self.locks_dir / f"{device_id}.owner"
        if not path.exists():
            return None
        return path.read_text().strip() or None

    # === Baselines ===

    def get_baseline(self, device_id: str) -> Optional[Baseline]:
        """
        Get the current baseline for a device.

        Returns None if the device has never been committed.
        """
        path = self.baselines_dir / device_id / "current.yaml"
        if not path.exists():
            return None
        try:
            return Baseline.from_yaml(path.read_text())
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to read baseline for {device_id}: {e}")
            return None

    def get_baseline_version(self, device_id: str, version: int) -> Optional[Baseline]:
        path = self.baselines_dir / device_id / "history" / f"v{version:04d}.yaml"
        if not path.exists():
            return None
        return Baseline.from_yaml(path.read_text())

    def list_baseline_history(self, device_id: str) -> list[int]:
        history_dir = self.baselines_dir / device_id / "history"
        if not history_dir.exists():
            return []
        return sorted(int(p.stem[1:]) for p in history_dir.glob("v*.yaml"))

    def list_baselines(self) -> list[str]:
        """List all device IDs with a baseline."""
        return sorted(
            p.name for p in self.baselines_dir.iterdir()
            if (p / "current.yaml").exists()
        )

    def commit_baseline(
        self,
        device_id: str,
        job_id: str,
        rendered: dict[str, Any],
        assertions: list[dict[str, str]],
    ) -> Baseline:
        """
        Replace the device baseline with a newly verified configuration.

        Only the job holding the device lock, both in this process and on
        the shared lock file, may commit.

        Raises:
            BaselineLockError: If job_id does not own the device lock
        """
        owner = self._lock_owner(device_id) if self._lock_owner else None
        if owner == job_id:
            owner = self.get_lock_owner(device_id)
        if owner != job_id:
            raise BaselineLockError(
                f"Job {job_id} cannot commit baseline for {device_id}: lock held by {owner or 'nobody'}",
                device_id=device_id,
            )

        existing = self.get_baseline(device_id)
        history = self.list_baseline_history(device_id)
        version = max([existing.version if existing else 0] + history) + 1

        baseline = Baseline(
            device_id=device_id,
            version=version,
            job_id=job_id,
            rendered=rendered,
            assertions=assertions,
            committed_at=datetime.now(timezone.utc),
        )
        text = baseline.to_yaml()
        device_dir = self.baselines_dir / device_id
        _atomic_write(device_dir / "history" / f"v{version:04d}.yaml", text)
        _atomic_write(device_dir / "current.yaml", text)

        logger.info(f"Committed baseline v{version} for {device_id} (job {job_id})")
        return baseline

    # === Jobs ===

    def save_job(self, job: dict[str, Any]) -> None:
        _atomic_write(self.jobs_dir / f"{job['id']}.json", json.dumps(job, indent=2, default=str))

    def load_job(self, job_id: str) -> Optional[dict[str, Any]]:
        path = self.jobs_dir / f"{job_id}.json"
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read job {job_id}: {e}")
            return None

    def list_jobs(self, device_id: Optional[str] = None, state: Optional[str] = None) -> list[dict[str, Any]]:
        """List job records, oldest first."""
        jobs = []
        for path in self.jobs_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable job file {path.name}: {e}")
                continue
            if device_id and data.get("device_id") != device_id:
                continue
            if state and data.get("state") != state:
                continue
            jobs.append(data)
        return sorted(jobs, key=lambda j: j.get("created_at", ""))

    # === Faults ===

    def set_fault(self, device_id: str, job_id: str, cause: str) -> dict[str, Any]:
        """Persist a device halt. Survives restarts until cleared."""
        fault = {
            "device_id": device_id,
            "job_id": job_id,
            "cause": cause,
            "raised_at": datetime.now(timezone.utc).isoformat(),
        }
        _atomic_write(self.faults_dir / f"{device_id}.yaml", yaml.safe_dump(fault, sort_keys=False))
        logger.critical(f"Device {device_id} halted by job {job_id}: {cause}")
        return fault

    def get_fault(self, device_id: str) -> Optional[dict[str, Any]]:
        path = self.faults_dir / f"{device_id}.yaml"
        if not path.exists():
            return None
        return yaml.safe_load(path.read_text()) or {"device_id": device_id}

    def clear_fault(self, device_id: str) -> bool:
        path = self.faults_dir / f"{device_id}.yaml"
        if path.exists():
            path.unlink()
            logger.warning(f"Fault cleared for {device_id}")
            return True
        return False

    def list_faults(self) -> list[dict[str, Any]]:
        return [self.get_fault(p.stem) for p in sorted(self.faults_dir.glob("*.yaml"))]

    # === Drift Reports ===

    def save_drift_report(self, report: dict[str, Any]) -> None:
        _atomic_write(
            self.drift_reports_dir / f"{report['device_id']}.json",
            json.dumps(report, indent=2, default=str),
        )

    def get_drift_report(self, device_id: str) -> Optional[dict[str, Any]]:
        path = self.drift_reports_dir / f"{device_id}.json"
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def list_drift_reports(self) -> list[dict[str, Any]]:
        return [json.loads(p.read_text()) for p in sorted(self.drift_reports_dir.glob("*.json"))]
