"""Job journal: state transitions, persistence and audit events in one place."""
import logging
from typing import Any, Optional

from ..config_store import StateStore
from ..utils.audit_log import AuditSink, JobEvent
from .state import LOCKED_STATES, DeploymentJob, JobState

logger = logging.getLogger(__name__)

_FAILURE_STATES = {JobState.FAILED, JobState.REJECTED}


class JobJournal:
    """Keeps live job objects and mirrors every change to the store and audit sink.

    Only jobs that can still change are held in memory; terminal jobs are
    dropped once persisted and reloaded from the store on demand.
    """

    def __init__(self, store: StateStore, audit: AuditSink):
        self.store = store
        self.audit = audit
        self._jobs: dict[str, DeploymentJob] = {}

    def register(self, job: DeploymentJob, **details: Any) -> DeploymentJob:
        self._track(job)
        self.store.save_job(job.to_dict())
        self.audit.record(JobEvent(
            job_id=job.id,
            device_id=job.device_id,
            from_state=None,
            to_state=job.state.value,
            stage="create",
            details={"source": job.source, **details},
        ))
        logger.info(f"Job {job.id} created for {job.device_id} (source={job.source})")
        return job

    def advance(
        self,
        job: DeploymentJob,
        to_state: JobState,
        stage: str,
        cause: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Transition a job, persist it and write the audit event.

        Raises:
            JobStateError: If the transition is illegal
        """
        if not job.rollback_requested and job.state in LOCKED_STATES:
            # Keep a flag set by another process from being overwritten
            job.rollback_requested = self.persisted_rollback_request(job.id)
        previous = job.transition(to_state, cause)
        self.store.save_job(job.to_dict())
        self._track(job)
        self.audit.record(JobEvent(
            job_id=job.id,
            device_id=job.device_id,
            from_state=previous.value,
            to_state=to_state.value,
            stage=stage,
            cause=cause,
            details=details,
        ))

        message = f"Job {job.id} [{job.device_id}] {previous.value} -> {to_state.value}"
        if cause:
            message += f": {cause}"
        if to_state == JobState.FAILED_FATAL:
            logger.critical(message)
        elif to_state in _FAILURE_STATES:
            logger.warning(message)
        else:
            logger.info(message)

    def note(self, job: DeploymentJob, stage: str, cause: Optional[str] = None, **details: Any) -> None:
        """Record an event that does not change state (approval, rollback request)."""
        self.store.save_job(job.to_dict())
        self._track(job)
        self.audit.record(JobEvent(
            job_id=job.id,
            device_id=job.device_id,
            from_state=job.state.value,
            to_state=job.state.value,
            stage=stage,
            cause=cause,
            details=details,
        ))

    def save(self, job: DeploymentJob) -> None:
        self.store.save_job(job.to_dict())

    def _track(self, job: DeploymentJob) -> None:
        if job.is_terminal:
            self._jobs.pop(job.id, None)
        else:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> DeploymentJob:
        """
        Look up a job in memory, then in the store.

        Raises:
            KeyError: If the job is unknown
        """
        if job_id in self._jobs:
            return self._jobs[job_id]
        data = self.store.load_job(job_id)
        if data is None:
            raise KeyError(f"Unknown job: {job_id}")
        job = DeploymentJob.from_dict(data)
        self._track(job)
        return job

    def persisted_rollback_request(self, job_id: str) -> bool:
        """True when another process flagged the job for rollback."""
        data = self.store.load_job(job_id)
        return bool(data and data.get("rollback_requested"))

    def list(self, device_id: Optional[str] = None, state: Optional[JobState] = None) -> list[DeploymentJob]:
        jobs = []
        for data in self.store.list_jobs(device_id=device_id, state=state.value if state else None):
            job = self._jobs.get(data["id"]) or DeploymentJob.from_dict(data)
            jobs.append(job)
        return jobs
