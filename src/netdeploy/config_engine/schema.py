"""Schema definitions for the deployment pipeline.

Defines rendered configs, validation findings, diffs and drift reports.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def compute_checksum(content: str) -> str:
    """SHA256 of configuration text, prefixed with the algorithm."""
    return f"sha256:{hashlib.sha256(content.encode('utf-8')).hexdigest()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Rendered Config ---

@dataclass(frozen=True)
class RenderedConfig:
    """Immutable rendered configuration for one device.

    A job holds exactly one of these from render to terminal state, so what
    was validated is bit-identical to what gets deployed.
    """
    device_id: str
    template_name: str
    template_version: str
    intent_version: str
    platform: str
    content: str
    content_hash: str
    rendered_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        device_id: str,
        template_name: str,
        template_version: str,
        intent_version: str,
        platform: str,
        content: str,
    ) -> "RenderedConfig":
        return cls(
            device_id=device_id,
            template_name=template_name,
            template_version=template_version,
            intent_version=intent_version,
            platform=platform,
            content=content,
            content_hash=compute_checksum(content),
        )

    def verify_integrity(self) -> bool:
        """True when content still matches the hash taken at render time."""
        return compute_checksum(self.content) == self.content_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "template_name": self.template_name,
            "template_version": self.template_version,
            "intent_version": self.intent_version,
            "platform": self.platform,
            "content": self.content,
            "content_hash": self.content_hash,
            "rendered_at": self.rendered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RenderedConfig":
        rendered_at = data.get("rendered_at")
        return cls(
            device_id=data["device_id"],
            template_name=data["template_name"],
            template_version=str(data["template_version"]),
            intent_version=str(data["intent_version"]),
            platform=data["platform"],
            content=data["content"],
            content_hash=data["content_hash"],
            rendered_at=datetime.fromisoformat(rendered_at) if rendered_at else utcnow(),
        )


# --- Validation Results ---

class Severity(str, Enum):
    """Finding severity, ordered."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __ge__(self, other):
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class Finding:
    """A single validation finding."""
    severity: Severity
    message: str
    line: Optional[int] = None  # 1-based line in the rendered content
    check: str = ""             # syntax, policy, golden

    @property
    def blocking(self) -> bool:
        return self.severity >= Severity.ERROR

    def __str__(self) -> str:
        where = f"line {self.line}: " if self.line else ""
        return f"[{self.severity.value}] {where}{self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "line": self.line,
            "check": self.check,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        return cls(
            severity=Severity(data["severity"]),
            message=data["message"],
            line=data.get("line"),
            check=data.get("check", ""),
        )


@dataclass
class ValidationResult:
    """Result of config validation."""
    findings: list[Finding] = field(default_factory=list)
    content_hash: Optional[str] = None

    @property
    def valid(self) -> bool:
        return not any(f.blocking for f in self.findings)

    @property
    def status(self) -> str:
        return "pass" if self.valid else "fail"

    @property
    def errors(self) -> list[Finding]:
        return [f for f in self.findings if f.blocking]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "content_hash": self.content_hash,
            "findings": [f.to_dict() for f in self.findings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationResult":
        return cls(
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            content_hash=data.get("content_hash"),
        )


# --- Diff Results ---

class DiffOp(str, Enum):
    """Type of change in a diff."""
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"

    def inverse(self) -> "DiffOp":
        if self == DiffOp.ADDED:
            return DiffOp.REMOVED
        if self == DiffOp.REMOVED:
            return DiffOp.ADDED
        return DiffOp.CHANGED


@dataclass(frozen=True)
class DiffLine:
    """A single normalized line difference.

    ``old`` is the line on the left side, ``new`` on the right side.
    ``position`` indexes the normalized left text for removed and changed
    lines, and the normalized right text for added lines.
    """
    op: DiffOp
    old: Optional[str] = None
    new: Optional[str] = None
    position: int = 0

    def __str__(self) -> str:
        if self.op == DiffOp.ADDED:
            return f"+ {self.new}"
        if self.op == DiffOp.REMOVED:
            return f"- {self.old}"
        return f"~ {self.old} -> {self.new}"

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op.value, "old": self.old, "new": self.new, "position": self.position}


# --- Drift ---

@dataclass
class DriftReport:
    """Drift between a device's baseline, its live config and its intent."""
    device_id: str
    generated_at: datetime
    baseline_version: Optional[int]
    diffs: list[DiffLine] = field(default_factory=list)
    intent_diffs: list[DiffLine] = field(default_factory=list)
    severity: float = 0.0
    managed: bool = True
    error: Optional[str] = None
    candidate_job_id: Optional[str] = None

    @property
    def in_sync(self) -> bool:
        return self.managed and not self.error and not self.diffs and not self.intent_diffs

    @property
    def drift_count(self) -> int:
        return len(self.diffs) + len(self.intent_diffs)

    def summary(self) -> str:
        """Human-readable summary."""
        if not self.managed:
            return f"{self.device_id}: UNMANAGED (no baseline)"
        if self.error:
            return f"{self.device_id}: ERROR {self.error}"
        if self.in_sync:
            return f"{self.device_id}: IN SYNC (baseline v{self.baseline_version})"

        lines = [
            f"{self.device_id}: DRIFT severity={self.severity:g} "
            f"({len(self.diffs)} live, {len(self.intent_diffs)} intent)"
        ]
        for diff in (self.diffs + self.intent_diffs)[:5]:
            lines.append(f"  {diff}")
        if self.drift_count > 5:
            lines.append(f"  ... and {self.drift_count - 5} more")
        if self.candidate_job_id:
            lines.append(f"  candidate job: {self.candidate_job_id}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "generated_at": self.generated_at.isoformat(),
            "baseline_version": self.baseline_version,
            "severity": self.severity,
            "managed": self.managed,
            "in_sync": self.in_sync,
            "error": self.error,
            "candidate_job_id": self.candidate_job_id,
            "diffs": [d.to_dict() for d in self.diffs],
            "intent_diffs": [d.to_dict() for d in self.intent_diffs],
        }
