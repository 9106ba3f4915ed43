"""Deployment engine - orchestrates the full job pipeline.

Provides a single entry point for:
1. Reading intent and rendering configuration
2. Validating the rendered text
3. Parking jobs for approval when required
4. Deploying, post-checking and committing (or rolling back)
5. Drift scans that feed candidate jobs back into the same pipeline
"""
import asyncio
import logging
from typing import Optional

from ..config.inventory import DeviceInventory
from ..config.settings import PipelineSettings
from ..config_store import StateStore
from ..devices.base import Assertion
from ..errors import IntentError, JobStateError, RenderError, ValidationError
from ..intent.store import IntentStore, YamlIntentStore
from ..utils.audit_log import AuditLog, AuditSink
from .diff import normalize
from .drift import DriftMonitor
from .executor import DeploymentExecutor
from .journal import JobJournal
from .locks import DeviceLockManager
from .postcheck import PostCheckVerifier
from .renderer import Renderer, TemplateRegistry
from .rollback import RollbackManager
from .schema import DriftReport, RenderedConfig, ValidationResult, utcnow
from .state import CANCELLABLE_STATES, LOCKED_STATES, DeploymentJob, JobState
from .validator import ConfigValidator

logger = logging.getLogger(__name__)


class DeploymentEngine:
    """
    Facade over the deployment pipeline.

    Usage:
        engine = DeploymentEngine.from_settings(PipelineSettings.load(), DeviceInventory())
        job = await engine.deploy("core-1")
    """

    def __init__(
        self,
        settings: PipelineSettings,
        inventory: DeviceInventory,
        intents: IntentStore,
        store: Optional[StateStore] = None,
        audit: Optional[AuditSink] = None,
    ):
        """
        Initialize the engine.

        Args:
            settings: Pipeline settings
            inventory: Device inventory with transport adapters
            intents: Read-only intent store
            store: State store (default: settings.state_dir)
            audit: Audit sink (default: AuditLog at settings.audit_log)
        """
        self.settings = settings
        self.inventory = inventory
        self.intents = intents
        self.store = store or StateStore(settings.state_dir)
        self.audit = audit if audit is not None else AuditLog(settings.audit_log)

        self.locks = DeviceLockManager(self.store)
        self.journal = JobJournal(self.store, self.audit)
        self.registry = TemplateRegistry(settings.templates_dir)
        self.renderer = Renderer(self.registry, settings.default_template)
        self.validator = ConfigValidator(settings.validation, settings.golden_dir, settings.volatile_patterns)
        self.verifier = PostCheckVerifier(settings.postcheck, self.locks)
        self.rollback_manager = RollbackManager(settings.retry, self.verifier, self.locks, settings.volatile_patterns)
        self.executor = DeploymentExecutor(
            self.store, self.journal, self.locks, self.verifier, self.rollback_manager, settings.retry
        )
        self.pool = asyncio.Semaphore(max(1, settings.concurrency))
        self.drift = DriftMonitor(self)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[PipelineSettings] = None,
        inventory: Optional[DeviceInventory] = None,
    ) -> "DeploymentEngine":
        settings = settings or PipelineSettings.load()
        inventory = inventory or DeviceInventory()
        return cls(settings, inventory, YamlIntentStore(settings.intent_dir))

    # === Render / Validate (no device contact) ===

    def render_for(
        self,
        device_id: str,
        intent_version: Optional[str] = None,
        template_name: Optional[str] = None,
    ) -> tuple[RenderedConfig, list[Assertion]]:
        """
        Render a device's intent and derive its post-check assertions.

        Raises:
            IntentError: If the intent cannot be read
            RenderError: On missing data or template faults
        """
        device = self.inventory.get_device_config(device_id)
        intent = self.intents.get_intent(device_id, intent_version)
        rendered = self.renderer.render(intent, device, template_name=template_name)
        return rendered, intent.assertions()

    def render(
        self,
        device_id: str,
        intent_version: Optional[str] = None,
        template_name: Optional[str] = None,
    ) -> RenderedConfig:
        return self.render_for(device_id, intent_version, template_name)[0]

    def validate(self, rendered: RenderedConfig) -> ValidationResult:
        return self.validator.validate(rendered)

    # === Jobs ===

    def create_job(
        self,
        device_id: str,
        source: str = "operator",
        intent_version: Optional[str] = None,
        template_name: Optional[str] = None,
        require_approval: bool = False,
    ) -> DeploymentJob:
        """Create and persist a Pending job.

        Raises:
            KeyError: If the device is not in the inventory
        """
        self.inventory.get_device_config(device_id)
        job = DeploymentJob(
            device_id=device_id,
            source=source,
            intent_version=intent_version,
            template_name=template_name,
            require_approval=require_approval,
        )
        return self.journal.register(job)

    def get_job(self, job_id: str) -> DeploymentJob:
        """
        Raises:
            KeyError: If the job is unknown
        """
        return self.journal.get(job_id)

    def list_jobs(self, device_id: Optional[str] = None, state: Optional[JobState] = None) -> list[DeploymentJob]:
        return self.journal.list(device_id=device_id, state=state)

    async def run_job(self, job: DeploymentJob) -> DeploymentJob:
        """Drive a job as far as it can go, bounded by the worker pool."""
        async with self.pool:
            return await self._run(job)

    async def _run(self, job: DeploymentJob) -> DeploymentJob:
        if job.is_terminal:
            return job

        if job.state == JobState.PENDING:
            self.journal.advance(job, JobState.RENDERING, stage="render")
            if job.rendered is None:
                try:
                    job.rendered, job.assertions = self.render_for(
                        job.device_id, job.intent_version, job.template_name
                    )
                except (IntentError, RenderError) as e:
                    job.fail(e)
                    self.journal.advance(job, JobState.FAILED, stage=e.stage, cause=str(e))
                    return job
                job.intent_version = job.rendered.intent_version
                job.template_name = job.rendered.template_name
            self.journal.advance(
                job, JobState.RENDERED, stage="render",
                content_hash=job.rendered.content_hash,
                template_version=job.rendered.template_version,
            )

        if job.state == JobState.RENDERED:
            self.journal.advance(job, JobState.VALIDATING, stage="validate")
            job.validation = self.validator.validate(job.rendered)
            if not job.validation.valid:
                error = ValidationError(
                    "; ".join(str(f) for f in job.validation.errors),
                    device_id=job.device_id,
                    findings=job.validation.errors,
                )
                job.fail(error)
                self.journal.advance(
                    job, JobState.REJECTED, stage="validate", cause=str(error),
                    findings=[f.to_dict() for f in job.validation.findings],
                )
                return job
            self.journal.advance(
                job, JobState.VALIDATED, stage="validate", warnings=len(job.validation.warnings)
            )

        if job.state == JobState.VALIDATED and job.require_approval:
            self.journal.advance(job, JobState.AWAITING_APPROVAL, stage="approve")
            return job

        if job.state == JobState.AWAITING_APPROVAL and not job.approved_by:
            return job

        if job.state not in (JobState.VALIDATED, JobState.AWAITING_APPROVAL):
            raise JobStateError(f"Job {job.id} cannot be deployed from {job.state.value}", device_id=job.device_id)

        device = self.inventory.get_device_config(job.device_id)
        transport = self.inventory.get_transport(job.device_id)
        return await self.executor.execute(job, device, transport)

    async def deploy(
        self,
        device_id: str,
        intent_version: Optional[str] = None,
        template_name: Optional[str] = None,
        require_approval: bool = False,
    ) -> DeploymentJob:
        """Create and run an operator job for one device."""
        job = self.create_job(
            device_id,
            intent_version=intent_version,
            template_name=template_name,
            require_approval=require_approval,
        )
        return await self.run_job(job)

    async def deploy_many(
        self,
        device_ids: list[str],
        intent_version: Optional[str] = None,
        template_name: Optional[str] = None,
        require_approval: bool = False,
    ) -> list[DeploymentJob]:
        """Deploy to several devices concurrently through the worker pool."""
        jobs = [
            self.create_job(d, intent_version=intent_version, template_name=template_name,
                            require_approval=require_approval)
            for d in device_ids
        ]
        return list(await asyncio.gather(*(self.run_job(job) for job in jobs)))

    async def approve(self, job_id: str, approver: str = "operator") -> DeploymentJob:
        """
        Approve a parked job and continue it through deployment.

        Raises:
            KeyError: If the job is unknown
            JobStateError: If the job is not awaiting approval
        """
        job = self.get_job(job_id)
        if job.state != JobState.AWAITING_APPROVAL:
            raise JobStateError(
                f"Job {job_id} is {job.state.value}, not awaiting approval", device_id=job.device_id
            )
        job.approved_by = approver
        job.approved_at = utcnow().isoformat()
        self.journal.note(job, stage="approve", cause=f"approved by {approver}")
        return await self.run_job(job)

    def cancel(self, job_id: str) -> DeploymentJob:
        """
        Cancel a job that has not started deploying.

        Raises:
            JobStateError: Once Deploying has started (only rollback may be requested)
        """
        job = self.get_job(job_id)
        if job.state not in CANCELLABLE_STATES:
            hint = "; request a rollback instead" if job.state in LOCKED_STATES and not job.is_terminal else ""
            raise JobStateError(f"Job {job_id} cannot be cancelled in {job.state.value}{hint}",
                                device_id=job.device_id)
        self.journal.advance(job, JobState.CANCELLED, stage="cancel", cause="cancelled by operator")
        return job

    async def rollback(self, job_id: str) -> DeploymentJob:
        """
        Roll back a job.

        An in-flight job is flagged and rolls back at its commit gate. A
        Committed job gets a revert job that redeploys its pre-deployment
        snapshot through the full pipeline.

        Returns:
            The flagged job, or the revert job

        Raises:
            JobStateError: If there is nothing to roll back
        """
        job = self.get_job(job_id)

        if job.state in LOCKED_STATES and not job.is_terminal:
            job.rollback_requested = True
            self.journal.note(job, stage="rollback", cause="rollback requested by operator")
            logger.warning(f"Rollback requested for in-flight job {job.id}")
            return job

        if job.state != JobState.COMMITTED:
            raise JobStateError(
                f"Job {job_id} is {job.state.value}; only in-flight or committed jobs can be rolled back",
                device_id=job.device_id,
            )
        if job.snapshot is None:
            raise JobStateError(f"Job {job_id} has no pre-deployment snapshot", device_id=job.device_id)

        revert = self._revert_job(job)
        self.journal.register(revert, reverts=job.id)
        return await self.run_job(revert)

    def _revert_job(self, job: DeploymentJob) -> DeploymentJob:
        platform = job.rendered.platform if job.rendered else self.inventory.get_device_config(job.device_id).platform
        rendered = RenderedConfig.create(
            device_id=job.device_id,
            template_name="snapshot",
            template_version=job.id,
            intent_version=job.rendered.intent_version if job.rendered else "unknown",
            platform=platform,
            content=normalize(job.snapshot, self.settings.volatile_patterns),
        )

        assertions: list[Assertion] = []
        if job.prior_baseline_version is not None:
            prior = self.store.get_baseline_version(job.device_id, job.prior_baseline_version)
            if prior:
                assertions = [Assertion.from_dict(a) for a in prior.assertions]

        return DeploymentJob(
            device_id=job.device_id,
            source="revert",
            reverts_job_id=job.id,
            intent_version=rendered.intent_version,
            template_name=rendered.template_name,
            rendered=rendered,
            assertions=assertions,
        )

    async def clear_fault(self, device_id: str) -> bool:
        """Manually clear a device halt after a failed rollback."""
        cleared = await self.locks.clear_fault(device_id)
        if cleared:
            logger.warning(f"Fault on {device_id} cleared by operator")
        return cleared

    # === Drift ===

    async def drift_scan(self, device_ids: Optional[list[str]] = None) -> list[DriftReport]:
        return await self.drift.scan_once(device_ids)
