"""Tests for the state store."""
import pytest

from netdeploy.config_engine import RenderedConfig
from netdeploy.config_store import Baseline, StateStore
from netdeploy.errors import BaselineLockError


def rendered(content: str = "hostname core-1\n") -> dict:
    return RenderedConfig.create("core-1", "device", "1.0", "1", "cli", content).to_dict()


class TestBaseline:
    """Tests for the Baseline record."""

    def test_yaml_round_trip(self):
        baseline = Baseline(
            device_id="core-1",
            version=3,
            job_id="job-abc",
            rendered=rendered(),
            assertions=[{"kind": "interface_up", "target": "eth0"}],
        )
        restored = Baseline.from_yaml(baseline.to_yaml())

        assert restored.version == 3
        assert restored.content == "hostname core-1\n"
        assert restored.content_hash == baseline.content_hash
        assert restored.assertions == baseline.assertions


class TestStateStore:
    """Tests for StateStore."""

    @pytest.fixture
    def store(self, tmp_path):
        return StateStore(tmp_path / "state")

    def test_creates_layout(self, store):
        for d in (store.baselines_dir, store.jobs_dir, store.faults_dir, store.locks_dir, store.drift_reports_dir):
            assert d.is_dir()

    def test_no_baseline(self, store):
        assert store.get_baseline("core-1") is None
        assert store.list_baselines() == []

    def test_commit_requires_lock(self, store):
        with pytest.raises(BaselineLockError, match="lock held by nobody"):
            store.commit_baseline("core-1", "job-a", rendered(), [])

        store.bind_lock_owner(lambda device_id: "job-b")
        with pytest.raises(BaselineLockError, match="job-b"):
            store.commit_baseline("core-1", "job-a", rendered(), [])
        assert store.get_baseline("core-1") is None

    def test_commit_requires_lock_file_owner(self, store):
        store.bind_lock_owner(lambda device_id: "job-a")
        with pytest.raises(BaselineLockError, match="lock held by nobody"):
            store.commit_baseline("core-1", "job-a", rendered(), [])

        store.set_lock_owner("core-1", "job-other")
        with pytest.raises(BaselineLockError, match="job-other"):
            store.commit_baseline("core-1", "job-a", rendered(), [])

        store.set_lock_owner("core-1", None)
        assert store.get_lock_owner("core-1") is None

    def test_commit_versions_and_history(self, store):
        store.bind_lock_owner(lambda device_id: "job-a")
        store.set_lock_owner("core-1", "job-a")
        first = store.commit_baseline("core-1", "job-a", rendered("hostname a\n"), [])
        second = store.commit_baseline("core-1", "job-a", rendered("hostname b\n"), [])

        assert (first.version, second.version) == (1, 2)
        assert store.get_baseline("core-1").content == "hostname b\n"
        assert store.get_baseline_version("core-1", 1).content == "hostname a\n"
        assert store.list_baseline_history("core-1") == [1, 2]
        assert store.list_baselines() == ["core-1"]

    def test_jobs(self, store):
        store.save_job({"id": "job-1", "device_id": "core-1", "state": "committed", "created_at": "2024-01-01"})
        store.save_job({"id": "job-2", "device_id": "core-2", "state": "pending", "created_at": "2024-01-02"})
        store.save_job({"id": "job-0", "device_id": "core-1", "state": "pending", "created_at": "2023-12-31"})

        assert store.load_job("job-1")["state"] == "committed"
        assert store.load_job("job-9") is None
        assert [j["id"] for j in store.list_jobs()] == ["job-0", "job-1", "job-2"]
        assert [j["id"] for j in store.list_jobs(device_id="core-1")] == ["job-0", "job-1"]
        assert [j["id"] for j in store.list_jobs(state="pending")] == ["job-0", "job-2"]

    def test_unreadable_job_is_skipped(self, store):
        (store.jobs_dir / "job-bad.json").write_text("{not json")
        assert store.load_job("job-bad") is None
        assert store.list_jobs() == []

    def test_faults(self, store):
        fault = store.set_fault("core-1", "job-a", "restore failed")
        assert fault["cause"] == "restore failed"
        assert store.get_fault("core-1")["job_id"] == "job-a"
        assert [f["device_id"] for f in store.list_faults()] == ["core-1"]

        assert store.clear_fault("core-1")
        assert store.get_fault("core-1") is None
        assert not store.clear_fault("core-1")

    def test_drift_reports(self, store):
        store.save_drift_report({"device_id": "core-1", "severity": 5})
        store.save_drift_report({"device_id": "core-1", "severity": 7})

        assert store.get_drift_report("core-1")["severity"] == 7
        assert store.get_drift_report("core-2") is None
        assert len(store.list_drift_reports()) == 1
