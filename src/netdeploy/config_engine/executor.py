"""Deployment executor: the locked Deploying -> terminal half of a job.

Takes a Validated (or approved) job through snapshot, apply, post-check and
commit, and hands failures after apply to the rollback manager exactly once.
A job cancelled while it holds the device lock is still driven to a terminal
state before the cancellation propagates.
"""
import asyncio
import logging
from typing import Optional

from ..config.settings import RetrySettings
from ..config_store import StateStore
from ..devices.base import Assertion, DeviceConfig, TransportAdapter
from ..errors import (
    ApplyError,
    BaselineLockError,
    DeviceHaltedError,
    PostCheckTimeout,
    RollbackFailure,
    TransportError,
    ValidationError,
)
from ..utils.connection import transport_retrying
from ..utils.logging_config import timed_section
from .journal import JobJournal
from .locks import DeviceLockManager
from .postcheck import PostCheckVerifier
from .rollback import RollbackManager
from .state import DeploymentJob, JobState

logger = logging.getLogger(__name__)

ROLLBACK_REQUESTED = "rollback requested by operator"
INTERRUPTED = "deployment interrupted by cancellation"


class DeploymentExecutor:
    """Apply rendered configs to devices, one job per device at a time."""

    def __init__(
        self,
        store: StateStore,
        journal: JobJournal,
        locks: DeviceLockManager,
        verifier: PostCheckVerifier,
        rollback_manager: RollbackManager,
        retry: Optional[RetrySettings] = None,
    ):
        self.store = store
        self.journal = journal
        self.locks = locks
        self.verifier = verifier
        self.rollback_manager = rollback_manager
        self.retry = retry or RetrySettings()

    async def execute(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> DeploymentJob:
        """
        Run a Validated or approved job to a terminal state.

        Args:
            job: Job in Validated or AwaitingApproval (approved) state
            device: Target device
            transport: Transport adapter variant for the device family

        Returns:
            The job, in Committed, RolledBack, FailedFatal or Failed
        """
        try:
            await self.locks.acquire(device.device_id, job.id)
        except DeviceHaltedError as e:
            job.fail(e)
            self.journal.advance(job, JobState.FAILED, stage="lock", cause=str(e))
            return job

        try:
            async with timed_section("deploy", device_id=device.device_id, job_id=job.id):
                try:
                    await self._deploy(job, device, transport)
                except asyncio.CancelledError:
                    await self._finish_cancelled(job, device, transport)
                    raise
        finally:
            # A fatal rollback keeps the lock as the device fault
            if job.state != JobState.FAILED_FATAL and self.locks.is_owner(device.device_id, job.id):
                await self.locks.release(device.device_id, job.id)
        return job

    async def _deploy(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> None:
        self.journal.advance(job, JobState.DEPLOYING, stage="deploy", content_hash=job.rendered.content_hash)

        if not job.rendered.verify_integrity():
            error = ValidationError("Rendered content changed after validation", device_id=job.device_id)
            job.fail(error)
            self.journal.advance(job, JobState.FAILED, stage="validate", cause=str(error))
            return

        baseline = self.store.get_baseline(device.device_id)
        job.prior_baseline_version = baseline.version if baseline else None

        # Pre-deployment snapshot; nothing has been changed if this fails
        try:
            job.snapshot = await self._read_config(device, transport)
        except TransportError as e:
            job.fail(e, stage="snapshot")
            self.journal.advance(job, JobState.FAILED, stage="snapshot", cause=str(e))
            return

        try:
            await self._apply(job, device, transport)
        except (TransportError, ApplyError) as e:
            job.fail(e)
            self.journal.advance(job, JobState.FAILED, stage=e.stage, cause=str(e), attempts=job.apply_attempts)
            await self._rollback(job, device, transport)
            return
        self.journal.advance(job, JobState.DEPLOYED, stage="apply", attempts=job.apply_attempts)

        self.journal.advance(job, JobState.POST_CHECKING, stage="postcheck")
        try:
            polls = await self.verifier.verify(transport, device, job.assertions)
        except PostCheckTimeout as e:
            job.fail(e)
            self.journal.advance(job, JobState.FAILED, stage="postcheck", cause=str(e), failing=e.failing)
            await self._rollback(job, device, transport)
            return
        self.journal.advance(job, JobState.VERIFIED, stage="postcheck", polls=polls)

        # Commit gate
        if job.rollback_requested or self.journal.persisted_rollback_request(job.id):
            job.rollback_requested = True
            job.error, job.error_stage = ROLLBACK_REQUESTED, "commit"
            self.journal.advance(job, JobState.FAILED, stage="commit", cause=ROLLBACK_REQUESTED)
            await self._rollback(job, device, transport)
            return

        try:
            baseline = self.store.commit_baseline(
                device.device_id,
                job.id,
                job.rendered.to_dict(),
                [a.to_dict() for a in job.assertions],
            )
        except BaselineLockError as e:
            job.fail(e)
            self.journal.advance(job, JobState.FAILED, stage="commit", cause=str(e))
            await self._rollback(job, device, transport)
            return

        job.baseline_version = baseline.version
        self.journal.advance(job, JobState.COMMITTED, stage="commit", baseline_version=baseline.version)

    async def _finish_cancelled(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> None:
        """Run the cancellation recovery to completion, even if cancelled again."""
        logger.warning(f"Job {job.id} cancelled in state {job.state.value}, recovering {device.device_id}")
        recovery = asyncio.ensure_future(self._recover_cancelled(job, device, transport))
        while True:
            try:
                await asyncio.shield(recovery)
                return
            except asyncio.CancelledError:
                if recovery.done():
                    raise

    async def _recover_cancelled(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> None:
        if job.is_terminal:
            return
        if job.state == JobState.ROLLING_BACK:
            # Restore was interrupted; the snapshot is re-applied from the start
            await self._restore(job, device, transport)
            return
        if job.state != JobState.FAILED:
            job.error, job.error_stage = INTERRUPTED, "cancel"
            self.journal.advance(job, JobState.FAILED, stage="cancel", cause=INTERRUPTED)
        if job.needs_rollback:
            await self._rollback(job, device, transport)

    async def _read_config(self, device: DeviceConfig, transport: TransportAdapter) -> str:
        async for attempt in transport_retrying(**self.retry.as_kwargs()):
            with attempt:
                async with self.locks.session(device.device_id):
                    return await transport.read_config(device)

    async def _apply(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> None:
        """Push the rendered content. TransportError is retried, ApplyError is not."""
        async for attempt in transport_retrying(**self.retry.as_kwargs()):
            with attempt:
                job.apply_attempts += 1
                async with self.locks.session(device.device_id):
                    result = await transport.apply(device, job.rendered.content)
                if not result.success:
                    raise ApplyError(
                        f"{device.device_id} did not accept the configuration",
                        device_id=device.device_id,
                        output=result.output,
                    )
        logger.info(f"Applied {job.rendered.content_hash[:19]} to {device.device_id} (attempts={job.apply_attempts})")

    async def _rollback(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> None:
        """Invoked exactly once per job that failed after apply started."""
        self.journal.advance(job, JobState.ROLLING_BACK, stage="rollback")
        await self._restore(job, device, transport)

    async def _restore(self, job: DeploymentJob, device: DeviceConfig, transport: TransportAdapter) -> None:
        prior: list[Assertion] = []
        if job.prior_baseline_version is not None:
            baseline = self.store.get_baseline_version(device.device_id, job.prior_baseline_version)
            if baseline:
                prior = [Assertion.from_dict(a) for a in baseline.assertions]

        try:
            await self.rollback_manager.rollback(transport, device, job.snapshot, prior)
        except RollbackFailure as e:
            job.fail(e)
            self.journal.advance(job, JobState.FAILED_FATAL, stage="rollback", cause=str(e))
            await self.locks.escalate(device.device_id, job.id, str(e))
            return

        self.journal.advance(job, JobState.ROLLED_BACK, stage="rollback")
