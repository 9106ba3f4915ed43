"""Rollback manager: restore the pre-deployment snapshot and re-verify."""
import logging
from typing import Optional

from ..config.settings import RetrySettings
from ..devices.base import Assertion, DeviceConfig, TransportAdapter
from ..errors import ApplyError, PostCheckTimeout, RollbackFailure, TransportError
from ..utils.connection import transport_retrying
from ..utils.logging_config import timed
from .diff import diff, summarize_diff
from .locks import DeviceLockManager
from .postcheck import PostCheckVerifier

logger = logging.getLogger(__name__)


class RollbackManager:
    """Re-applies a snapshot with the transport retry policy, then verifies it."""

    def __init__(
        self,
        retry: Optional[RetrySettings] = None,
        verifier: Optional[PostCheckVerifier] = None,
        locks: Optional[DeviceLockManager] = None,
        volatile_patterns: Optional[list[str]] = None,
    ):
        self.retry = retry or RetrySettings()
        self.locks = locks or DeviceLockManager()
        self.verifier = verifier or PostCheckVerifier(locks=self.locks)
        self.volatile_patterns = volatile_patterns

    @timed("rollback")
    async def rollback(
        self,
        transport: TransportAdapter,
        device: DeviceConfig,
        snapshot: str,
        prior_assertions: Optional[list[Assertion]] = None,
    ) -> None:
        """
        Restore a device to its pre-deployment snapshot.

        The restore succeeds when the live config normalizes equal to the
        snapshot and the prior baseline's assertions hold again.

        Raises:
            RollbackFailure: If the snapshot cannot be applied or verified
        """
        device_id = device.device_id
        logger.warning(f"Rolling back {device_id} to pre-deployment snapshot")

        try:
            async for attempt in transport_retrying(**self.retry.as_kwargs()):
                with attempt:
                    async with self.locks.session(device_id):
                        result = await transport.apply(device, snapshot)
                    if not result.success:
                        raise ApplyError(
                            f"{device_id} did not accept the snapshot: {result.output.strip()}",
                            device_id=device_id,
                            output=result.output,
                        )
        except (TransportError, ApplyError) as e:
            raise RollbackFailure(f"Could not restore snapshot on {device_id}: {e}", device_id=device_id)

        try:
            async for attempt in transport_retrying(**self.retry.as_kwargs()):
                with attempt:
                    async with self.locks.session(device_id):
                        live = await transport.read_config(device)
        except TransportError as e:
            raise RollbackFailure(f"Could not read back {device_id} after restore: {e}", device_id=device_id)

        remaining = diff(snapshot, live, self.volatile_patterns)
        if remaining:
            raise RollbackFailure(
                f"Restored config on {device_id} differs from snapshot\n{summarize_diff(remaining, limit=10)}",
                device_id=device_id,
            )

        if prior_assertions:
            try:
                await self.verifier.verify(transport, device, prior_assertions)
            except PostCheckTimeout as e:
                raise RollbackFailure(
                    f"Prior baseline assertions fail after restore on {device_id}: {e}",
                    device_id=device_id,
                )

        logger.info(f"Rollback of {device_id} verified")
