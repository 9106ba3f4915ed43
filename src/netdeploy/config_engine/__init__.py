"""Config Engine - intent-driven configuration deployment pipeline.

The engine turns intent into verified device configuration:
- Deterministic rendering from versioned templates
- Validation before any device contact
- Per-device serialized deploys with post-checks
- Automatic rollback to the pre-deployment snapshot
- Drift scans that raise approval-gated remediation jobs

Usage:
    from netdeploy.config_engine import DeploymentEngine

    engine = DeploymentEngine.from_settings()
    job = await engine.deploy("core-1")
    print(job.state)
"""

from .engine import DeploymentEngine
from .schema import (
    RenderedConfig,
    Severity,
    Finding,
    ValidationResult,
    DiffOp,
    DiffLine,
    DriftReport,
    compute_checksum,
)
from .state import (
    JobState,
    DeploymentJob,
    TERMINAL_STATES,
    CANCELLABLE_STATES,
    exit_code,
)
from .renderer import Renderer, Template, TemplateRegistry
from .validator import ConfigValidator
from .diff import diff, normalize, severity_score, summarize_diff
from .locks import DeviceLockManager
from .journal import JobJournal
from .postcheck import PostCheckVerifier
from .rollback import RollbackManager
from .executor import DeploymentExecutor
from .drift import DriftMonitor

__all__ = [
    # Main engine
    "DeploymentEngine",
    # Schema classes
    "RenderedConfig",
    "Severity",
    "Finding",
    "ValidationResult",
    "DiffOp",
    "DiffLine",
    "DriftReport",
    "compute_checksum",
    # Job state machine
    "JobState",
    "DeploymentJob",
    "TERMINAL_STATES",
    "CANCELLABLE_STATES",
    "exit_code",
    # Components (for advanced use)
    "Renderer",
    "Template",
    "TemplateRegistry",
    "ConfigValidator",
    "diff",
    "normalize",
    "severity_score",
    "summarize_diff",
    "DeviceLockManager",
    "JobJournal",
    "PostCheckVerifier",
    "RollbackManager",
    "DeploymentExecutor",
    "DriftMonitor",
]
