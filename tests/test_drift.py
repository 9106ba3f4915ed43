"""Tests for the drift monitor."""
import pytest

from netdeploy.config_engine import JobState

from conftest import make_intent


async def deploy_baseline(engine):
    job = await engine.deploy("core-1")
    assert job.state == JobState.COMMITTED
    return job


class TestDriftMonitor:

    @pytest.mark.asyncio
    async def test_unmanaged_device(self, engine):
        report = await engine.drift.scan_device("core-1")

        assert not report.managed
        assert not report.in_sync
        assert "UNMANAGED" in report.summary()
        assert engine.store.get_drift_report("core-1")["managed"] is False

    @pytest.mark.asyncio
    async def test_in_sync(self, engine):
        await deploy_baseline(engine)

        report = await engine.drift.scan_device("core-1")

        assert report.in_sync
        assert report.baseline_version == 1
        assert report.severity == 0
        assert report.candidate_job_id is None

    @pytest.mark.asyncio
    async def test_volatile_lines_are_not_drift(self, engine, sim):
        await deploy_baseline(engine)
        device = sim.devices["core-1"]
        device.running_config = "! Last configuration change at 10:00\n" + device.running_config

        assert (await engine.drift.scan_device("core-1")).in_sync

    @pytest.mark.asyncio
    async def test_minor_drift_below_threshold(self, engine, sim):
        await deploy_baseline(engine)
        device = sim.devices["core-1"]
        device.running_config = device.running_config.replace("description Uplink", "description Up")

        report = await engine.drift.scan_device("core-1")

        assert not report.in_sync
        assert report.severity == 0.5
        assert report.candidate_job_id is None
        assert engine.list_jobs(state=JobState.AWAITING_APPROVAL) == []

    @pytest.mark.asyncio
    async def test_critical_drift_spawns_parked_candidate(self, engine, sim):
        baseline_job = await deploy_baseline(engine)
        device = sim.devices["core-1"]
        device.running_config = device.running_config.replace("end\n", "ip route 0.0.0.0/0 192.0.2.1\nend\n")

        report = await engine.drift.scan_device("core-1")

        assert report.severity == 5
        assert len(report.diffs) == 1
        assert report.intent_diffs == []
        job = engine.get_job(report.candidate_job_id)
        assert job.source == "drift"
        assert job.state == JobState.AWAITING_APPROVAL
        assert job.drift_severity == 5
        assert job.rendered.content_hash == baseline_job.rendered.content_hash
        # The monitor never touches the device or the baseline
        assert "ip route 0.0.0.0/0" in device.running_config
        assert engine.store.get_baseline("core-1").version == 1

        approved = await engine.approve(job.id)
        assert approved.state == JobState.COMMITTED
        assert "ip route" not in device.running_config
        assert (await engine.drift.scan_device("core-1")).in_sync

    @pytest.mark.asyncio
    async def test_candidates_are_not_duplicated(self, engine, sim):
        await deploy_baseline(engine)
        device = sim.devices["core-1"]
        device.running_config = device.running_config.replace("end\n", "ip route 0.0.0.0/0 192.0.2.1\nend\n")

        first = await engine.drift.scan_device("core-1")
        second = await engine.drift.scan_device("core-1")

        assert first.candidate_job_id == second.candidate_job_id
        assert len(engine.list_jobs(state=JobState.AWAITING_APPROVAL)) == 1

    @pytest.mark.asyncio
    async def test_policy_auto_approves_low_severity(self, engine, sim):
        engine.drift.settings.auto_approve_max_severity = 5
        await deploy_baseline(engine)
        device = sim.devices["core-1"]
        device.running_config = device.running_config.replace("end\n", "ip route 0.0.0.0/0 192.0.2.1\nend\n")

        report = await engine.drift.scan_device("core-1")

        job = engine.get_job(report.candidate_job_id)
        assert job.state == JobState.COMMITTED
        assert job.approved_by == "policy"
        assert "ip route" not in device.running_config

    @pytest.mark.asyncio
    async def test_intent_drift(self, engine, intents):
        await deploy_baseline(engine)
        intents.add(make_intent(version="2", routing={"static_routes": [{"prefix": "10.9.0.0/16", "next_hop": "10.1.1.254"}]}))

        report = await engine.drift.scan_device("core-1")

        assert report.diffs == []
        assert [d.new for d in report.intent_diffs] == ["ip route 10.9.0.0/16 10.1.1.254"]
        job = engine.get_job(report.candidate_job_id)
        assert job.intent_version == "2"
        assert job.state == JobState.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_halted_device_is_skipped(self, engine, sim):
        await deploy_baseline(engine)
        engine.store.set_fault("core-1", "job-x", "restore failed")

        report = await engine.drift.scan_device("core-1")

        assert report.error == "device halted, skipped"
        # Only the deploy snapshot read the device
        assert sim.devices["core-1"].call_log.count("read_config") == 1

    @pytest.mark.asyncio
    async def test_unreachable_device_reports_error(self, engine, sim):
        await deploy_baseline(engine)
        sim.device("core-1", unreachable=True)

        report = await engine.drift.scan_device("core-1")

        assert report.error.startswith("read failed")
        assert report.candidate_job_id is None

    @pytest.mark.asyncio
    async def test_scan_once_and_schedule(self, engine):
        await deploy_baseline(engine)

        reports = await engine.drift_scan()
        assert {r.device_id: r.managed for r in reports} == {"core-1": True, "core-2": False}

        await engine.drift.run_forever(["core-1"], interval=0, iterations=2)
        assert engine.store.get_drift_report("core-1")["in_sync"] is True
