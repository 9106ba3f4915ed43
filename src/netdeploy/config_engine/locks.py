"""Per-device deploy locks, session locks and fault escalation.

The deploy lock is held by exactly one job from Deploying until the job
commits or rolls back. With a state store it is two locks: an in-process
slot that queues this engine's jobs, and a lock file under the store's
locks/ directory that excludes other processes sharing the state directory.

A job whose rollback fails escalates its lock into a persisted fault: the
slot is never released by the job, and every later acquire for the device,
in any process, raises DeviceHaltedError until clear_fault() runs.
"""
import asyncio
import logging
from typing import Optional

from filelock import FileLock, Timeout

from ..config_store import StateStore
from ..errors import DeviceHaltedError, JobStateError

logger = logging.getLogger(__name__)

# Seconds between attempts on a lock file held by another process
LOCK_POLL_INTERVAL = 0.05


class _DeviceSlot:
    def __init__(self):
        self.owner: Optional[str] = None
        self.faulted_job: Optional[str] = None
        self.file_lock: Optional[FileLock] = None
        self.condition = asyncio.Condition()
        self.session = asyncio.Lock()


class DeviceLockManager:
    """Serializes jobs and device sessions per device id."""

    def __init__(self, store: Optional[StateStore] = None, poll_interval: float = LOCK_POLL_INTERVAL):
        self.store = store
        self.poll_interval = poll_interval
        self._slots: dict[str, _DeviceSlot] = {}
        self._faults: dict[str, dict] = {}
        if store is not None:
            store.bind_lock_owner(self.owner)

    def _slot(self, device_id: str) -> _DeviceSlot:
        if device_id not in self._slots:
            self._slots[device_id] = _DeviceSlot()
        return self._slots[device_id]

    def owner(self, device_id: str) -> Optional[str]:
        slot = self._slots.get(device_id)
        return slot.owner if slot else None

    def is_owner(self, device_id: str, job_id: str) -> bool:
        return self.owner(device_id) == job_id

    def fault(self, device_id: str) -> Optional[dict]:
        """The device's fault record, persisted when there is a store."""
        if self.store is not None:
            return self.store.get_fault(device_id)
        return self._faults.get(device_id)

    def is_halted(self, device_id: str) -> bool:
        return self.fault(device_id) is not None

    def _check_fault(self, device_id: str) -> None:
        fault = self.fault(device_id)
        if fault is not None:
            raise DeviceHaltedError(device_id, fault.get("job_id"))

    async def acquire(self, device_id: str, job_id: str) -> None:
        """
        Take the deploy lock for a job, waiting for the current holder.

        Jobs of this process queue on the device slot; the slot holder then
        waits for the lock file if another process has it.

        Raises:
            DeviceHaltedError: If the device is (or becomes) faulted
        """
        slot = self._slot(device_id)
        async with slot.condition:
            while True:
                self._check_fault(device_id)
                if slot.owner is not None and slot.owner == slot.faulted_job:
                    # Fault was cleared by another process
                    logger.warning(f"Lock {device_id} freed from cleared fault of {slot.owner}")
                    slot.owner = slot.faulted_job = None
                if slot.owner is None:
                    slot.owner = job_id
                    break
                if slot.owner == job_id:
                    return
                await slot.condition.wait()

        try:
            await self._acquire_file_lock(slot, device_id, job_id)
        except BaseException:
            async with slot.condition:
                slot.owner = None
                slot.condition.notify_all()
            raise
        logger.debug(f"Lock {device_id} acquired by {job_id}")

    async def _acquire_file_lock(self, slot: _DeviceSlot, device_id: str, job_id: str) -> None:
        if self.store is None:
            return
        file_lock = self.store.device_lock(device_id)
        while True:
            self._check_fault(device_id)
            try:
                file_lock.acquire(timeout=0)
                break
            except Timeout:
                await asyncio.sleep(self.poll_interval)

        # The previous holder may have faulted the device just before letting go
        try:
            self._check_fault(device_id)
        except DeviceHaltedError:
            file_lock.release()
            raise
        slot.file_lock = file_lock
        self.store.set_lock_owner(device_id, job_id)

    def _release_file_lock(self, slot: _DeviceSlot, device_id: str) -> None:
        if slot.file_lock is None:
            return
        self.store.set_lock_owner(device_id, None)
        slot.file_lock.release()
        slot.file_lock = None

    async def release(self, device_id: str, job_id: str) -> None:
        """
        Release the deploy lock.

        Raises:
            JobStateError: If job_id does not hold the lock
        """
        slot = self._slot(device_id)
        async with slot.condition:
            if slot.owner != job_id:
                raise JobStateError(
                    f"Job {job_id} does not hold the lock for {device_id} (held by {slot.owner})",
                    device_id=device_id,
                )
            self._release_file_lock(slot, device_id)
            slot.owner = None
            slot.condition.notify_all()
            logger.debug(f"Lock {device_id} released by {job_id}")

    async def escalate(self, device_id: str, job_id: str, cause: str) -> dict:
        """Turn the job's lock into a persisted device fault.

        Waiters are woken so they fail fast with DeviceHaltedError. The lock
        file is let go once the fault is on disk; other processes check the
        fault before and after taking it.
        """
        if self.store is not None:
            fault = self.store.set_fault(device_id, job_id, cause)
        else:
            fault = {"device_id": device_id, "job_id": job_id, "cause": cause}
            self._faults[device_id] = fault
            logger.critical(f"Device {device_id} halted by job {job_id}: {cause}")
        slot = self._slot(device_id)
        async with slot.condition:
            slot.faulted_job = job_id
            self._release_file_lock(slot, device_id)
            slot.condition.notify_all()
        return fault

    async def clear_fault(self, device_id: str) -> bool:
        """Clear a device fault and free a lock left behind by the faulted job."""
        fault = self.fault(device_id)
        if self.store is not None:
            cleared = self.store.clear_fault(device_id)
        else:
            cleared = self._faults.pop(device_id, None) is not None
        slot = self._slot(device_id)
        async with slot.condition:
            if fault and slot.owner == fault.get("job_id"):
                slot.owner = None
            slot.faulted_job = None
            slot.condition.notify_all()
        return cleared

    def session(self, device_id: str) -> asyncio.Lock:
        """Lock serializing transport sessions to one device.

        Usage:
            async with locks.session(device.device_id):
                text = await transport.read_config(device)
        """
        return self._slot(device_id).session
