"""Drift monitor: compare live config and current intent against the baseline.

Reports at or above the severity threshold spawn a candidate job that is
rendered and validated, then parked in AwaitingApproval. The monitor never
commits and never touches the baseline.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..errors import IntentError, RenderError, TransportError
from ..utils.connection import transport_retrying
from .diff import diff, severity_score
from .schema import DriftReport, RenderedConfig, utcnow
from .state import DeploymentJob, JobState

if TYPE_CHECKING:
    from .engine import DeploymentEngine

logger = logging.getLogger(__name__)


class DriftMonitor:
    """Periodic read-only drift scanner."""

    def __init__(self, engine: "DeploymentEngine"):
        self.engine = engine
        self.settings = engine.settings.drift

    async def scan_device(self, device_id: str) -> DriftReport:
        """Scan one device and persist its report."""
        engine = self.engine
        report = DriftReport(device_id=device_id, generated_at=utcnow(), baseline_version=None)

        if engine.locks.is_halted(device_id):
            report.error = "device halted, skipped"
            logger.warning(f"Drift scan skipped {device_id}: device is halted")
            engine.store.save_drift_report(report.to_dict())
            return report

        baseline = engine.store.get_baseline(device_id)
        if baseline is None:
            report.managed = False
            logger.info(f"{device_id} has no baseline, reported as unmanaged")
            engine.store.save_drift_report(report.to_dict())
            return report
        report.baseline_version = baseline.version

        device = engine.inventory.get_device_config(device_id)
        transport = engine.inventory.get_transport(device_id)
        volatile = engine.settings.volatile_patterns

        live: Optional[str] = None
        try:
            async with engine.pool:
                async for attempt in transport_retrying(**engine.settings.retry.as_kwargs()):
                    with attempt:
                        async with engine.locks.session(device_id):
                            live = await transport.read_config(device)
        except TransportError as e:
            report.error = f"read failed: {e}"
        if live is not None:
            report.diffs = diff(baseline.content, live, volatile)

        rendered: Optional[RenderedConfig] = None
        assertions = []
        try:
            rendered, assertions = engine.render_for(device_id)
            report.intent_diffs = diff(baseline.content, rendered.content, volatile)
        except (IntentError, RenderError) as e:
            report.error = f"{report.error}; " if report.error else ""
            report.error += f"render failed: {e}"

        report.severity = severity_score(report.diffs + report.intent_diffs, self.settings.criticality)

        if (
            rendered is not None
            and live is not None
            and report.severity >= self.settings.threshold
            and diff(live, rendered.content, volatile)
        ):
            job = await self._spawn_candidate(device_id, rendered, assertions, report.severity)
            report.candidate_job_id = job.id

        engine.store.save_drift_report(report.to_dict())
        logger.info(report.summary())
        return report

    async def _spawn_candidate(self, device_id: str, rendered: RenderedConfig, assertions, severity: float) -> DeploymentJob:
        engine = self.engine

        for existing in engine.journal.list(device_id=device_id, state=JobState.AWAITING_APPROVAL):
            if existing.source == "drift" and existing.rendered and existing.rendered.content_hash == rendered.content_hash:
                logger.info(f"Drift candidate for {device_id} already pending as {existing.id}")
                return existing

        job = DeploymentJob(
            device_id=device_id,
            source="drift",
            intent_version=rendered.intent_version,
            template_name=rendered.template_name,
            rendered=rendered,
            assertions=list(assertions),
            require_approval=True,
            drift_severity=severity,
        )
        engine.journal.register(job, severity=severity)
        await engine.run_job(job)

        auto_max = self.settings.auto_approve_max_severity
        if job.state == JobState.AWAITING_APPROVAL and auto_max is not None and severity <= auto_max:
            logger.info(f"Auto-approving drift job {job.id} (severity {severity:g} <= {auto_max:g})")
            await engine.approve(job.id, approver="policy")
        return job

    async def scan_once(self, device_ids: Optional[list[str]] = None) -> list[DriftReport]:
        """Scan devices concurrently; device reads share the engine worker pool."""
        device_ids = device_ids or self.engine.inventory.get_device_ids()
        return list(await asyncio.gather(*(self.scan_device(d) for d in device_ids)))

    async def run_forever(
        self,
        device_ids: Optional[list[str]] = None,
        interval: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """Scan on a schedule until cancelled (or for a number of iterations)."""
        interval = self.settings.interval if interval is None else interval
        count = 0
        while iterations is None or count < iterations:
            reports = await self.scan_once(device_ids)
            drifted = [r for r in reports if not r.in_sync]
            logger.info(f"Drift scan #{count + 1}: {len(reports)} devices, {len(drifted)} not in sync")
            count += 1
            if iterations is None or count < iterations:
                await asyncio.sleep(interval)
