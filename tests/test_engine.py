"""End-to-end pipeline tests against simulated devices."""
import asyncio

import pytest

from netdeploy.config_engine import DeploymentEngine, JobState, exit_code, normalize
from netdeploy.devices import ApplyResult, SimulatedTransport
from netdeploy.errors import JobStateError, TransportError
from netdeploy.utils.audit_log import AuditLog

from conftest import PRIOR_CLI, make_intent, with_bgp

HAPPY_STATES = [
    "pending", "rendering", "rendered", "validating", "validated",
    "deploying", "deployed", "post_checking", "verified", "committed",
]


def states(audit, job_id):
    return [e.to_state for e in audit.read_events(job_id=job_id) if e.from_state != e.to_state]


class FlakyApply(SimulatedTransport):
    """Apply fails with a transport error a number of times first."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def apply(self, device, text):
        if self.failures:
            self.failures -= 1
            raise TransportError(f"{device.device_id} connection reset", device_id=device.device_id)
        return await super().apply(device, text)


class RollbackDuringPostCheck(SimulatedTransport):
    """Requests a rollback of the job being post-checked, through a given engine."""

    def __init__(self):
        super().__init__()
        self.engine = None
        self.requester = None

    async def check_assertions(self, device, assertions):
        for job in self.engine.list_jobs(device_id=device.device_id, state=JobState.POST_CHECKING):
            await self.requester.rollback(job.id)
        return await super().check_assertions(device, assertions)


class SlowChecks(SimulatedTransport):
    """Post-check polls take a while, keeping the job inside its device lock."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def check_assertions(self, device, assertions):
        await asyncio.sleep(self.delay)
        return await super().check_assertions(device, assertions)


class RefusesRestore(SimulatedTransport):
    """Accepts the deployment, then reports the snapshot restore as not applied."""

    async def apply(self, device, text):
        if self.device(device.device_id).apply_count:
            return ApplyResult(success=False, output="% Commit failed: configuration database locked")
        return await super().apply(device, text)


class TestScenarios:
    """The four reference deployment scenarios."""

    @pytest.mark.asyncio
    async def test_a_successful_deploy_updates_baseline(self, engine, sim, audit):
        job = await engine.deploy("core-1")

        assert job.state == JobState.COMMITTED
        assert exit_code(job) == 0
        assert job.validation.valid
        assert job.apply_attempts == 1
        assert job.baseline_version == 1

        baseline = engine.store.get_baseline("core-1")
        assert baseline.job_id == job.id
        assert baseline.content_hash == job.rendered.content_hash
        assert baseline.assertions == [{"kind": "interface_up", "target": "eth0"}]
        assert sim.devices["core-1"].running_config == job.rendered.content
        assert states(audit, job.id) == HAPPY_STATES
        assert engine.locks.owner("core-1") is None

    @pytest.mark.asyncio
    async def test_b_policy_violation_is_rejected(self, engine, intents, sim, audit):
        intents.add(make_intent(version="2", services={"logging_hosts": ["10.0.0.200"]}))

        job = await engine.deploy("core-1")

        assert job.state == JobState.REJECTED
        assert exit_code(job) == 1
        assert job.error_stage == "validate"
        assert any("NTP" in f.message for f in job.validation.errors)
        # The executor never ran: the device was never contacted
        assert "core-1" not in sim.devices
        assert engine.store.get_baseline("core-1") is None
        assert "deploying" not in states(audit, job.id)

    @pytest.mark.asyncio
    async def test_c_postcheck_timeout_rolls_back(self, engine, intents, sim, audit):
        first = await engine.deploy("core-1")
        intents.add(make_intent(version="2", **with_bgp()))
        sim.device("core-1", stuck_peers={"10.0.0.2"})

        job = await engine.deploy("core-1")

        assert job.state == JobState.ROLLED_BACK
        assert exit_code(job) == 2
        assert job.error_stage == "postcheck"
        assert "peer 10.0.0.2 established" in job.error
        assert job.prior_baseline_version == 1

        baseline = engine.store.get_baseline("core-1")
        assert baseline.version == 1
        assert baseline.job_id == first.id
        assert normalize(sim.devices["core-1"].running_config) == normalize(first.rendered.content)

        trail = states(audit, job.id)
        assert trail[-3:] == ["failed", "rolling_back", "rolled_back"]
        assert trail.count("rolling_back") == 1
        # deploy, deploy, restore
        assert sim.devices["core-1"].apply_count == 3

    @pytest.mark.asyncio
    async def test_d_failed_rollback_halts_device(self, engine, sim, audit):
        sim.device("core-1", unreachable_after_apply=True)

        job = await engine.deploy("core-1")

        assert job.state == JobState.FAILED_FATAL
        assert exit_code(job) == 3
        assert job.error_stage == "rollback"
        assert states(audit, job.id)[-3:] == ["failed", "rolling_back", "failed_fatal"]
        assert engine.store.get_fault("core-1")["job_id"] == job.id
        assert engine.locks.owner("core-1") == job.id

        refused = await engine.deploy("core-1")
        assert refused.state == JobState.FAILED
        assert refused.error_stage == "lock"
        assert exit_code(refused) == 3
        assert refused.apply_attempts == 0

        # Only a manual clear lets automation back in
        sim.device("core-1", unreachable=False, unreachable_after_apply=False)
        assert await engine.clear_fault("core-1")
        retried = await engine.deploy("core-1")
        assert retried.state == JobState.COMMITTED


class TestExecutorFailures:
    """Transport and device errors around apply."""

    @pytest.mark.asyncio
    async def test_refused_restore_is_fatal(self, engine, inventory):
        transport = RefusesRestore()
        inventory.set_transport("simulated", transport)
        transport.device("core-1", down_interfaces={"eth0"})

        job = await engine.deploy("core-1")

        assert job.state == JobState.FAILED_FATAL
        assert job.error_stage == "rollback"
        assert "configuration database locked" in job.error
        assert engine.store.get_fault("core-1")["job_id"] == job.id

    @pytest.mark.asyncio
    async def test_apply_error_is_not_retried(self, engine, sim):
        sim.device("core-1", reject_patterns=[r"^ ip address"])

        job = await engine.deploy("core-1")

        assert job.state == JobState.ROLLED_BACK
        assert job.error_stage == "apply"
        assert job.apply_attempts == 1
        assert engine.store.get_baseline("core-1") is None

    @pytest.mark.asyncio
    async def test_transient_transport_error_is_retried(self, engine, inventory):
        inventory.set_transport("simulated", FlakyApply(failures=1))

        job = await engine.deploy("core-1")

        assert job.state == JobState.COMMITTED
        assert job.apply_attempts == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_and_roll_back(self, engine, inventory):
        inventory.set_transport("simulated", FlakyApply(failures=2))

        job = await engine.deploy("core-1")

        assert job.state == JobState.ROLLED_BACK
        assert job.error_stage == "transport"
        assert job.apply_attempts == 2

    @pytest.mark.asyncio
    async def test_unreachable_before_snapshot(self, engine, sim, audit):
        sim.device("core-1", unreachable=True)

        job = await engine.deploy("core-1")

        assert job.state == JobState.FAILED
        assert job.is_terminal
        assert job.error_stage == "snapshot"
        assert exit_code(job) == 2
        assert "rolling_back" not in states(audit, job.id)
        assert engine.locks.owner("core-1") is None

    @pytest.mark.asyncio
    async def test_render_error_fails_job(self, engine, intents):
        intents.add(make_intent(version="2", hostname=None))

        job = await engine.deploy("core-1")

        assert job.state == JobState.FAILED
        assert job.error_stage == "render"
        assert exit_code(job) == 1

    @pytest.mark.asyncio
    async def test_unknown_intent_version(self, engine):
        job = await engine.deploy("core-1", intent_version="9")
        assert job.state == JobState.FAILED
        assert job.error_stage == "intent"

    @pytest.mark.asyncio
    async def test_unknown_device(self, engine):
        with pytest.raises(KeyError):
            await engine.deploy("nope")


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_jobs_for_one_device_are_serialized(self, engine, inventory):
        inventory.set_transport("simulated", SimulatedTransport(latency=0.01))

        jobs = await asyncio.gather(engine.deploy("core-1"), engine.deploy("core-1"))

        assert [j.state for j in jobs] == [JobState.COMMITTED, JobState.COMMITTED]
        first, second = sorted(jobs, key=lambda j: j.timestamps()["deploying"])
        assert first.timestamps()["committed"] <= second.timestamps()["deploying"]
        assert engine.store.get_baseline("core-1").version == 2

    @pytest.mark.asyncio
    async def test_deploy_many_across_devices(self, engine, inventory):
        targets = inventory.resolve_targets(group="core")
        jobs = await engine.deploy_many(targets)

        assert {j.device_id for j in jobs} == {"core-1", "core-2"}
        assert all(j.state == JobState.COMMITTED for j in jobs)

    @pytest.mark.asyncio
    async def test_engines_sharing_state_dir_are_serialized(self, engine, settings, inventory, intents):
        inventory.set_transport("simulated", SlowChecks(delay=0.05))
        other = DeploymentEngine(settings, inventory, intents, audit=AuditLog())

        jobs = await asyncio.gather(engine.deploy("core-1"), other.deploy("core-1"))

        assert [j.state for j in jobs] == [JobState.COMMITTED, JobState.COMMITTED]
        first, second = sorted(jobs, key=lambda j: j.timestamps()["deploying"])
        assert first.timestamps()["committed"] <= second.timestamps()["deploying"]
        assert second.snapshot == first.rendered.content
        assert engine.store.get_baseline("core-1").version == 2
        assert engine.store.get_lock_owner("core-1") is None

    @pytest.mark.asyncio
    async def test_cancelled_deploy_is_rolled_back(self, engine, inventory, audit):
        transport = SlowChecks(delay=0.2)
        inventory.set_transport("simulated", transport)
        transport.device("core-1", running_config=PRIOR_CLI)

        task = asyncio.create_task(engine.deploy("core-1"))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        [job] = engine.list_jobs(device_id="core-1")
        assert job.state == JobState.ROLLED_BACK
        assert job.error_stage == "cancel"
        assert exit_code(job) == 2
        assert states(audit, job.id)[-4:] == ["post_checking", "failed", "rolling_back", "rolled_back"]
        assert transport.devices["core-1"].running_config == PRIOR_CLI
        assert engine.store.get_baseline("core-1") is None
        assert engine.locks.owner("core-1") is None
        assert engine.store.get_lock_owner("core-1") is None

        retried = await engine.deploy("core-1")
        assert retried.state == JobState.COMMITTED


class TestApprovalAndCancel:

    @pytest.mark.asyncio
    async def test_job_parks_for_approval(self, engine, sim):
        job = await engine.deploy("core-1", require_approval=True)

        assert job.state == JobState.AWAITING_APPROVAL
        assert exit_code(job) == 0
        assert "core-1" not in sim.devices

    @pytest.mark.asyncio
    async def test_approve_in_new_engine(self, engine, settings, inventory, intents):
        parked = await engine.deploy("core-1", require_approval=True)

        other = DeploymentEngine(settings, inventory, intents, audit=AuditLog())
        job = await other.approve(parked.id, approver="alice")

        assert job.state == JobState.COMMITTED
        assert job.approved_by == "alice"
        assert job.rendered.content_hash == parked.rendered.content_hash
        assert other.store.get_baseline("core-1").job_id == parked.id

    @pytest.mark.asyncio
    async def test_approve_requires_awaiting_state(self, engine):
        job = await engine.deploy("core-1")
        with pytest.raises(JobStateError, match="not awaiting approval"):
            await engine.approve(job.id)
        with pytest.raises(KeyError):
            await engine.approve("job-unknown")

    @pytest.mark.asyncio
    async def test_cancel_parked_job(self, engine):
        job = await engine.deploy("core-1", require_approval=True)

        cancelled = engine.cancel(job.id)

        assert cancelled.state == JobState.CANCELLED
        assert exit_code(cancelled) == 2
        with pytest.raises(JobStateError):
            await engine.approve(job.id)

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, engine):
        job = engine.create_job("core-1")
        assert engine.cancel(job.id).state == JobState.CANCELLED
        assert (await engine.run_job(job)).state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_cannot_cancel_after_deploy(self, engine):
        job = await engine.deploy("core-1")
        with pytest.raises(JobStateError, match="cannot be cancelled"):
            engine.cancel(job.id)


class TestRollbackRequests:

    @pytest.mark.asyncio
    async def test_in_flight_request_honored_at_commit_gate(self, engine, inventory, audit):
        transport = RollbackDuringPostCheck()
        transport.engine = transport.requester = engine
        inventory.set_transport("simulated", transport)

        job = await engine.deploy("core-1")

        assert job.rollback_requested
        assert job.state == JobState.ROLLED_BACK
        assert job.error_stage == "commit"
        assert engine.store.get_baseline("core-1") is None
        assert states(audit, job.id)[-4:] == ["verified", "failed", "rolling_back", "rolled_back"]

    @pytest.mark.asyncio
    async def test_request_from_another_process(self, engine, settings, inventory, intents):
        transport = RollbackDuringPostCheck()
        transport.engine = engine
        transport.requester = DeploymentEngine(settings, inventory, intents, audit=AuditLog())
        inventory.set_transport("simulated", transport)

        job = await engine.deploy("core-1")

        assert job.state == JobState.ROLLED_BACK
        assert engine.store.get_baseline("core-1") is None

    @pytest.mark.asyncio
    async def test_revert_committed_job(self, engine, sim):
        sim.device("core-1", running_config=PRIOR_CLI)
        job = await engine.deploy("core-1")
        assert job.snapshot == PRIOR_CLI

        revert = await engine.rollback(job.id)

        assert revert.id != job.id
        assert revert.source == "revert"
        assert revert.reverts_job_id == job.id
        assert revert.state == JobState.COMMITTED
        assert revert.rendered.template_name == "snapshot"
        assert normalize(sim.devices["core-1"].running_config) == normalize(PRIOR_CLI)
        baseline = engine.store.get_baseline("core-1")
        assert (baseline.version, baseline.job_id) == (2, revert.id)

    @pytest.mark.asyncio
    async def test_nothing_to_roll_back(self, engine, intents):
        intents.add(make_intent(version="2", services={}))
        job = await engine.deploy("core-1")
        assert job.state == JobState.REJECTED
        with pytest.raises(JobStateError, match="only in-flight or committed"):
            await engine.rollback(job.id)


class TestJobQueries:

    @pytest.mark.asyncio
    async def test_list_jobs(self, engine):
        await engine.deploy("core-1")
        parked = await engine.deploy("core-2", require_approval=True)

        assert len(engine.list_jobs()) == 2
        assert [j.id for j in engine.list_jobs(state=JobState.AWAITING_APPROVAL)] == [parked.id]
        assert [j.device_id for j in engine.list_jobs(device_id="core-1")] == ["core-1"]
        assert engine.get_job(parked.id) is parked

    @pytest.mark.asyncio
    async def test_finished_jobs_are_reloaded_from_store(self, engine):
        done = [await engine.deploy("core-1") for _ in range(3)]
        parked = await engine.deploy("core-2", require_approval=True)

        assert list(engine.journal._jobs) == [parked.id]
        reloaded = engine.get_job(done[0].id)
        assert reloaded is not done[0]
        assert reloaded.state == JobState.COMMITTED
        assert reloaded.baseline_version == 1
        assert list(engine.journal._jobs) == [parked.id]
