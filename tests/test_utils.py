"""Tests for the audit log and retry helpers."""
import pytest

from netdeploy.errors import ApplyError, TransportError
from netdeploy.utils import AuditLog, JobEvent, transport_retrying, with_retry

FAST = {"max_attempts": 3, "min_wait": 0, "max_wait": 0, "timeout": 5}


class TestAuditLog:
    """Tests for AuditLog."""

    def test_memory_only(self):
        audit = AuditLog()
        audit.record(JobEvent("job-1", "core-1", None, "pending", stage="create"))
        audit.record(JobEvent("job-2", "core-2", None, "pending", stage="create"))
        audit.record(JobEvent("job-1", "core-1", "pending", "rendering", stage="render"))

        assert [e.to_state for e in audit.read_events(job_id="job-1")] == ["pending", "rendering"]
        assert [e.job_id for e in audit.read_events(device_id="core-2")] == ["job-2"]
        assert audit.read_events(limit=1)[0].to_state == "rendering"

    def test_file_is_json_lines(self, tmp_path):
        path = tmp_path / "audit" / "audit.log"
        audit = AuditLog(path)
        audit.record(JobEvent("job-1", "core-1", "deploying", "failed", stage="transport",
                              cause="connection refused", details={"attempts": 3}))
        assert audit._events == []
        audit.close()

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        event = JobEvent.from_json(lines[0])
        assert event.cause == "connection refused"
        assert event.details == {"attempts": 3}

    def test_reads_events_from_other_writers(self, tmp_path):
        path = tmp_path / "audit.log"
        writer = AuditLog(path)
        writer.record(JobEvent("job-1", "core-1", None, "pending"))
        writer.close()
        with open(path, "a") as f:
            f.write("not json\n\n")

        reader = AuditLog(path)
        assert [e.job_id for e in reader.read_events()] == ["job-1"]
        reader.close()

    def test_reads_rotated_backups(self, tmp_path):
        path = tmp_path / "audit.log"
        audit = AuditLog(path, max_bytes=300, backup_count=10)
        for n in range(5):
            audit.record(JobEvent(f"job-{n}", "core-1", "deploying", "failed", stage="postcheck",
                                  cause="assertions not met"))

        assert (tmp_path / "audit.log.1").exists()
        assert [e.job_id for e in audit.read_events()] == [f"job-{n}" for n in range(5)]
        assert [e.job_id for e in audit.read_events(limit=2)] == ["job-3", "job-4"]
        audit.close()


class TestRetry:
    """Tests for the tenacity-based retry helpers."""

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransportError("timeout")
            return "ok"

        async for attempt in transport_retrying(**FAST):
            with attempt:
                result = await flaky()
        assert result == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise(self):
        calls = []

        async def down():
            calls.append(1)
            raise TransportError("unreachable", device_id="core-1")

        with pytest.raises(TransportError, match="unreachable"):
            async for attempt in transport_retrying(**FAST):
                with attempt:
                    await down()
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_apply_errors_are_not_retried(self):
        calls = []

        async def rejected():
            calls.append(1)
            raise ApplyError("% Invalid input")

        with pytest.raises(ApplyError):
            async for attempt in transport_retrying(**FAST):
                with attempt:
                    await rejected()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_with_retry_decorator_async(self):
        calls = []

        @with_retry(max_attempts=2, min_wait=0, max_wait=0)
        async def read():
            calls.append(1)
            if len(calls) == 1:
                raise TransportError("reset")
            return "config"

        assert await read() == "config"
        assert len(calls) == 2

    def test_with_retry_decorator_sync(self):
        calls = []

        @with_retry(max_attempts=2, min_wait=0, max_wait=0)
        def connect():
            calls.append(1)
            raise TransportError("refused")

        with pytest.raises(TransportError):
            connect()
        assert len(calls) == 2
