"""Append-only audit log for deployment jobs.

Every job state transition is written as one JSON line:
- Timestamped, with job id and device id
- From/to state and the pipeline stage
- Error cause when the transition was triggered by a failure
- Separate audit log file, size-rotated apart from the main log; queries
  read the rotated backups too
"""
import hashlib
import json
import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class JobEvent:
    """One state transition of a deployment job."""
    job_id: str
    device_id: str
    from_state: Optional[str]
    to_state: str
    stage: str = ""
    cause: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "JobEvent":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)


class AuditSink(Protocol):
    """Anything that accepts job events, append-only."""

    def record(self, event: JobEvent) -> None:
        ...


class AuditLog:
    """JSON-lines audit log.

    With no path the log is memory-only, which is what tests and dry runs use.
    With a path, events live only on disk and queries read them back.
    """

    def __init__(self, path: Optional[Path] = None, max_bytes: int = 50 * 1024 * 1024, backup_count: int = 20):
        self.path = Path(path) if path else None
        self.backup_count = backup_count
        self._events: list[JobEvent] = []
        self._logger: Optional[logging.Logger] = None

        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # One dedicated logger per audit file
            suffix = hashlib.sha256(str(self.path.resolve()).encode()).hexdigest()[:12]
            audit_logger = logging.getLogger(f"netdeploy.audit.{suffix}")
            audit_logger.setLevel(logging.INFO)
            audit_logger.handlers.clear()

            handler = RotatingFileHandler(
                self.path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            audit_logger.addHandler(handler)

            # Don't propagate to root logger
            audit_logger.propagate = False
            self._logger = audit_logger

    def record(self, event: JobEvent) -> None:
        """Append an event. Never raises on I/O trouble; the job must go on."""
        if self._logger is None:
            self._events.append(event)
            return
        try:
            self._logger.info(event.to_json())
            for handler in self._logger.handlers:
                handler.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to write audit event for job {event.job_id}: {e}")

    def read_events(
        self,
        job_id: Optional[str] = None,
        device_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[JobEvent]:
        """Read events, oldest first, optionally filtered.

        Reads the file and its rotated backups when there is one, so events
        written by other processes are included.
        """
        if self.path is None:
            events = list(self._events)
        else:
            events = self._read_file()

        if job_id:
            events = [e for e in events if e.job_id == job_id]
        if device_id:
            events = [e for e in events if e.device_id == device_id]
        if limit:
            events = events[-limit:]
        return events

    def _files(self) -> list[Path]:
        """Rotated backups oldest first, then the live file."""
        backups = [self.path.with_name(f"{self.path.name}.{n}") for n in range(self.backup_count, 0, -1)]
        return [p for p in backups + [self.path] if p.exists()]

    def _read_file(self) -> list[JobEvent]:
        events = []
        for path in self._files():
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        events.append(JobEvent.from_json(line))
                    except (json.JSONDecodeError, TypeError):
                        continue  # Skip malformed lines
        return events

    def close(self) -> None:
        if self._logger is None:
            return
        for handler in list(self._logger.handlers):
            handler.close()
            self._logger.removeHandler(handler)
