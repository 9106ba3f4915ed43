"""Tests for per-device deploy locks and fault escalation."""
import asyncio

import pytest

from netdeploy.config_engine import DeviceLockManager
from netdeploy.config_store import StateStore
from netdeploy.errors import DeviceHaltedError, JobStateError


class TestDeviceLockManager:

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")
        assert locks.owner("core-1") == "job-a"
        assert locks.is_owner("core-1", "job-a")

        await locks.release("core-1", "job-a")
        assert locks.owner("core-1") is None

    @pytest.mark.asyncio
    async def test_release_by_other_job(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")
        with pytest.raises(JobStateError, match="does not hold"):
            await locks.release("core-1", "job-b")

    @pytest.mark.asyncio
    async def test_second_job_waits(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")

        waiter = asyncio.create_task(locks.acquire("core-1", "job-b"))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await locks.release("core-1", "job-a")
        await asyncio.wait_for(waiter, 1)
        assert locks.owner("core-1") == "job-b"

    @pytest.mark.asyncio
    async def test_devices_are_independent(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")
        await asyncio.wait_for(locks.acquire("core-2", "job-b"), 1)
        assert locks.owner("core-2") == "job-b"

    @pytest.mark.asyncio
    async def test_escalate_halts_device(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")
        await locks.escalate("core-1", "job-a", "restore failed")

        assert locks.is_halted("core-1")
        assert locks.owner("core-1") == "job-a"
        with pytest.raises(DeviceHaltedError) as exc:
            await locks.acquire("core-1", "job-b")
        assert exc.value.fault_job_id == "job-a"

    @pytest.mark.asyncio
    async def test_waiters_fail_fast_on_escalation(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")
        waiter = asyncio.create_task(locks.acquire("core-1", "job-b"))
        await asyncio.sleep(0.01)

        await locks.escalate("core-1", "job-a", "restore failed")
        with pytest.raises(DeviceHaltedError):
            await asyncio.wait_for(waiter, 1)

    @pytest.mark.asyncio
    async def test_clear_fault_frees_lock(self):
        locks = DeviceLockManager()
        await locks.acquire("core-1", "job-a")
        await locks.escalate("core-1", "job-a", "restore failed")

        assert await locks.clear_fault("core-1")
        assert not locks.is_halted("core-1")
        assert locks.owner("core-1") is None
        await locks.acquire("core-1", "job-b")
        assert not await locks.clear_fault("core-1")

    @pytest.mark.asyncio
    async def test_fault_survives_restart(self, tmp_path):
        store = StateStore(tmp_path)
        locks = DeviceLockManager(store)
        await locks.acquire("core-1", "job-a")
        await locks.escalate("core-1", "job-a", "restore failed")

        restarted = DeviceLockManager(StateStore(tmp_path))
        assert restarted.fault("core-1")["job_id"] == "job-a"
        with pytest.raises(DeviceHaltedError):
            await restarted.acquire("core-1", "job-b")

        assert await restarted.clear_fault("core-1")
        await restarted.acquire("core-1", "job-b")

    def test_session_lock_per_device(self):
        locks = DeviceLockManager()
        assert locks.session("core-1") is locks.session("core-1")
        assert locks.session("core-1") is not locks.session("core-2")


class TestDeviceLockFile:
    """Tests for the lock file shared by managers on one state directory."""

    @pytest.mark.asyncio
    async def test_lock_file_records_owner(self, tmp_path):
        store = StateStore(tmp_path)
        locks = DeviceLockManager(store)
        await locks.acquire("core-1", "job-a")
        assert store.get_lock_owner("core-1") == "job-a"

        await locks.release("core-1", "job-a")
        assert store.get_lock_owner("core-1") is None

    @pytest.mark.asyncio
    async def test_second_manager_waits_for_lock_file(self, tmp_path):
        first = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        second = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        await first.acquire("core-1", "job-a")

        waiter = asyncio.create_task(second.acquire("core-1", "job-b"))
        await asyncio.sleep(0.05)
        assert not waiter.done()
        assert second.owner("core-1") is None

        await first.release("core-1", "job-a")
        await asyncio.wait_for(waiter, 1)
        assert second.owner("core-1") == "job-b"
        assert second.store.get_lock_owner("core-1") == "job-b"

    @pytest.mark.asyncio
    async def test_waiter_on_lock_file_sees_fault(self, tmp_path):
        first = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        second = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        await first.acquire("core-1", "job-a")
        waiter = asyncio.create_task(second.acquire("core-1", "job-b"))
        await asyncio.sleep(0.03)

        await first.escalate("core-1", "job-a", "restore failed")
        with pytest.raises(DeviceHaltedError):
            await asyncio.wait_for(waiter, 1)
        assert second._slots["core-1"].owner is None

    @pytest.mark.asyncio
    async def test_cancelled_waiter_frees_slot(self, tmp_path):
        first = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        second = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        await first.acquire("core-1", "job-a")
        waiter = asyncio.create_task(second.acquire("core-1", "job-b"))
        await asyncio.sleep(0.03)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await first.release("core-1", "job-a")
        await asyncio.wait_for(second.acquire("core-1", "job-c"), 1)
        assert second.owner("core-1") == "job-c"

    @pytest.mark.asyncio
    async def test_fault_cleared_by_other_manager(self, tmp_path):
        first = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        second = DeviceLockManager(StateStore(tmp_path), poll_interval=0.01)
        await first.acquire("core-1", "job-a")
        await first.escalate("core-1", "job-a", "restore failed")
        assert first.owner("core-1") == "job-a"

        assert await second.clear_fault("core-1")
        await asyncio.wait_for(second.acquire("core-1", "job-b"), 1)
        await second.release("core-1", "job-b")

        await asyncio.wait_for(first.acquire("core-1", "job-c"), 1)
        assert first.owner("core-1") == "job-c"
