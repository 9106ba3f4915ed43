"""Error taxonomy for the deployment pipeline.

Every error carries the pipeline stage it was raised in and a short cause,
so it can be attached to a DeploymentJob and written to the audit log as-is.

Retry policy by type:
- RenderError, ValidationError, ApplyError: never retried
- TransportError: retried with exponential backoff
- PostCheckTimeout: not retried, triggers rollback
- RollbackFailure: fatal, halts automation for the device
"""
from typing import Optional


class NetdeployError(Exception):
    """Base class for all pipeline errors."""

    stage = "pipeline"

    def __init__(self, message: str, device_id: Optional[str] = None, cause: Optional[str] = None):
        self.message = message
        self.device_id = device_id
        self.cause = cause or message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "stage": self.stage,
            "message": self.message,
            "device_id": self.device_id,
            "cause": self.cause,
        }


class IntentError(NetdeployError):
    """Intent record missing or unreadable in the intent store."""
    stage = "intent"


class RenderError(NetdeployError):
    """Data or template defect. Must be fixed upstream, never retried."""
    stage = "render"


class ValidationError(NetdeployError):
    """Rendered config violates syntax or policy."""
    stage = "validate"

    def __init__(self, message: str, device_id: Optional[str] = None, findings: Optional[list] = None):
        self.findings = findings or []
        super().__init__(message, device_id=device_id)


class TransportError(NetdeployError):
    """Transient connectivity or authentication failure."""
    stage = "transport"


class ApplyError(NetdeployError):
    """Device rejected the configuration outright."""
    stage = "apply"

    def __init__(self, message: str, device_id: Optional[str] = None, output: str = ""):
        self.output = output
        super().__init__(message, device_id=device_id)


class PostCheckTimeout(NetdeployError):
    """Operational assertions did not hold within the post-check window."""
    stage = "postcheck"

    def __init__(self, message: str, device_id: Optional[str] = None, failing: Optional[list[str]] = None):
        self.failing = failing or []
        super().__init__(message, device_id=device_id)


class RollbackFailure(NetdeployError):
    """Restoring the pre-deployment snapshot failed. Fatal for the device."""
    stage = "rollback"


class JobStateError(NetdeployError):
    """Illegal state transition or operation for the job's current state."""
    stage = "job"


class DeviceHaltedError(NetdeployError):
    """Device is in fault after a failed rollback and refuses automated jobs."""
    stage = "lock"

    def __init__(self, device_id: str, fault_job_id: Optional[str] = None):
        self.fault_job_id = fault_job_id
        super().__init__(
            f"Device {device_id} is halted after failed rollback"
            + (f" of job {fault_job_id}" if fault_job_id else "")
            + "; clear the fault manually before deploying",
            device_id=device_id,
        )


class BaselineLockError(NetdeployError):
    """Baseline mutation attempted without holding the device lock."""
    stage = "commit"
