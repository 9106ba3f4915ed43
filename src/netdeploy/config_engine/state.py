"""Deployment job record and its state machine."""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..devices.base import Assertion
from ..errors import JobStateError
from .schema import RenderedConfig, ValidationResult, utcnow


class JobState(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    RENDERED = "rendered"
    VALIDATING = "validating"
    VALIDATED = "validated"
    REJECTED = "rejected"
    AWAITING_APPROVAL = "awaiting_approval"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    POST_CHECKING = "post_checking"
    VERIFIED = "verified"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED_FATAL = "failed_fatal"
    CANCELLED = "cancelled"


S = JobState

TRANSITIONS: dict[JobState, set[JobState]] = {
    S.PENDING: {S.RENDERING, S.CANCELLED},
    S.RENDERING: {S.RENDERED, S.FAILED, S.CANCELLED},
    S.RENDERED: {S.VALIDATING, S.CANCELLED},
    S.VALIDATING: {S.VALIDATED, S.REJECTED, S.CANCELLED},
    # FAILED here means the device refused the lock (halted)
    S.VALIDATED: {S.AWAITING_APPROVAL, S.DEPLOYING, S.FAILED, S.CANCELLED},
    S.AWAITING_APPROVAL: {S.DEPLOYING, S.FAILED, S.CANCELLED},
    S.DEPLOYING: {S.DEPLOYED, S.FAILED},
    S.DEPLOYED: {S.POST_CHECKING, S.FAILED},
    S.POST_CHECKING: {S.VERIFIED, S.FAILED},
    S.VERIFIED: {S.COMMITTED, S.FAILED},
    S.FAILED: {S.ROLLING_BACK},
    S.ROLLING_BACK: {S.ROLLED_BACK, S.FAILED_FATAL},
    S.REJECTED: set(),
    S.COMMITTED: set(),
    S.ROLLED_BACK: set(),
    S.FAILED_FATAL: set(),
    S.CANCELLED: set(),
}

TERMINAL_STATES = {S.REJECTED, S.COMMITTED, S.ROLLED_BACK, S.FAILED_FATAL, S.CANCELLED}

CANCELLABLE_STATES = {S.PENDING, S.RENDERING, S.RENDERED, S.VALIDATING, S.VALIDATED, S.AWAITING_APPROVAL}

# States during which the job holds the device lock
LOCKED_STATES = {S.DEPLOYING, S.DEPLOYED, S.POST_CHECKING, S.VERIFIED, S.FAILED, S.ROLLING_BACK}

JOB_SOURCES = ("operator", "drift", "revert")


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


@dataclass
class DeploymentJob:
    """One device's trip through the pipeline."""
    device_id: str
    id: str = field(default_factory=new_job_id)
    source: str = "operator"
    state: JobState = JobState.PENDING
    intent_version: Optional[str] = None
    template_name: Optional[str] = None
    rendered: Optional[RenderedConfig] = None
    validation: Optional[ValidationResult] = None
    snapshot: Optional[str] = None
    assertions: list[Assertion] = field(default_factory=list)
    apply_attempts: int = 0
    require_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rollback_requested: bool = False
    reverts_job_id: Optional[str] = None
    prior_baseline_version: Optional[int] = None
    baseline_version: Optional[int] = None
    drift_severity: Optional[float] = None
    error: Optional[str] = None
    error_stage: Optional[str] = None
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def apply_started(self) -> bool:
        return self.apply_attempts > 0

    @property
    def is_terminal(self) -> bool:
        """Terminal states, plus Failed when nothing was applied to the device."""
        if self.state in TERMINAL_STATES:
            return True
        return self.state == JobState.FAILED and not self.apply_started

    @property
    def needs_rollback(self) -> bool:
        return self.state == JobState.FAILED and self.apply_started

    @property
    def updated_at(self) -> str:
        return self.history[-1]["at"] if self.history else self.created_at

    def can_transition(self, to_state: JobState) -> bool:
        if self.is_terminal:
            return False
        return to_state in TRANSITIONS[self.state]

    def transition(self, to_state: JobState, cause: Optional[str] = None) -> JobState:
        """
        Move to a new state and timestamp it.

        Returns:
            The previous state

        Raises:
            JobStateError: If the transition is not allowed
        """
        if not self.can_transition(to_state):
            raise JobStateError(
                f"Job {self.id}: illegal transition {self.state.value} -> {to_state.value}",
                device_id=self.device_id,
            )
        previous = self.state
        self.state = to_state
        entry = {"state": to_state.value, "at": utcnow().isoformat()}
        if cause:
            entry["cause"] = cause
        self.history.append(entry)
        return previous

    def fail(self, error: Exception, stage: Optional[str] = None) -> None:
        """Attach an error to the job."""
        self.error = str(error)
        self.error_stage = stage or getattr(error, "stage", "pipeline")

    def timestamps(self) -> dict[str, str]:
        """Latest timestamp per state."""
        return {h["state"]: h["at"] for h in self.history}

    def to_dict(self, include_content: bool = True) -> dict[str, Any]:
        rendered = None
        if self.rendered:
            rendered = self.rendered.to_dict()
            if not include_content:
                rendered.pop("content")
        return {
            "id": self.id,
            "device_id": self.device_id,
            "source": self.source,
            "state": self.state.value,
            "terminal": self.is_terminal,
            "intent_version": self.intent_version,
            "template_name": self.template_name,
            "rendered": rendered,
            "validation": self.validation.to_dict() if self.validation else None,
            "snapshot": self.snapshot if include_content else None,
            "assertions": [a.to_dict() for a in self.assertions],
            "apply_attempts": self.apply_attempts,
            "require_approval": self.require_approval,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "rollback_requested": self.rollback_requested,
            "reverts_job_id": self.reverts_job_id,
            "prior_baseline_version": self.prior_baseline_version,
            "baseline_version": self.baseline_version,
            "drift_severity": self.drift_severity,
            "error": self.error,
            "error_stage": self.error_stage,
            "created_at": self.created_at,
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentJob":
        rendered = data.get("rendered")
        validation = data.get("validation")
        return cls(
            id=data["id"],
            device_id=data["device_id"],
            source=data.get("source", "operator"),
            state=JobState(data["state"]),
            intent_version=data.get("intent_version"),
            template_name=data.get("template_name"),
            rendered=RenderedConfig.from_dict(rendered) if rendered and "content" in rendered else None,
            validation=ValidationResult.from_dict(validation) if validation else None,
            snapshot=data.get("snapshot"),
            assertions=[Assertion.from_dict(a) for a in data.get("assertions", [])],
            apply_attempts=data.get("apply_attempts", 0),
            require_approval=data.get("require_approval", False),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
            rollback_requested=data.get("rollback_requested", False),
            reverts_job_id=data.get("reverts_job_id"),
            prior_baseline_version=data.get("prior_baseline_version"),
            baseline_version=data.get("baseline_version"),
            drift_severity=data.get("drift_severity"),
            error=data.get("error"),
            error_stage=data.get("error_stage"),
            created_at=data.get("created_at", utcnow().isoformat()),
            history=list(data.get("history", [])),
        )

    def summary(self) -> str:
        line = f"{self.id} {self.device_id:15s} {self.state.value:18s} source={self.source}"
        if self.error:
            line += f" error[{self.error_stage}]={self.error}"
        return line


# Process exit codes of the command surface
EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_DEPLOY_FAILED = 2
EXIT_FATAL = 3


def exit_code(job: DeploymentJob) -> int:
    """Map a job's outcome to a command exit code."""
    if job.state == JobState.FAILED_FATAL or job.error_stage == "lock":
        return EXIT_FATAL
    if job.state == JobState.REJECTED or job.error_stage in ("render", "intent"):
        return EXIT_REJECTED
    if job.state in (JobState.ROLLED_BACK, JobState.FAILED, JobState.CANCELLED):
        return EXIT_DEPLOY_FAILED
    return EXIT_OK
