"""Post-check verification: poll operational assertions after apply."""
import logging
from typing import Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from ..config.settings import PostCheckSettings
from ..devices.base import Assertion, DeviceConfig, TransportAdapter
from ..errors import PostCheckTimeout, TransportError
from ..utils.logging_config import timed_section
from .locks import DeviceLockManager

logger = logging.getLogger(__name__)


class _NotYet(Exception):
    """Assertions did not hold on this poll."""


class PostCheckVerifier:
    """Polls check_assertions with exponential backoff until it holds or times out.

    Never changes device configuration. A transport error during a poll counts
    as "not yet".
    """

    def __init__(self, settings: Optional[PostCheckSettings] = None, locks: Optional[DeviceLockManager] = None):
        self.settings = settings or PostCheckSettings()
        self.locks = locks or DeviceLockManager()

    async def verify(
        self,
        transport: TransportAdapter,
        device: DeviceConfig,
        assertions: list[Assertion],
        timeout: Optional[float] = None,
    ) -> int:
        """
        Wait until every assertion holds.

        Returns:
            Number of polls it took

        Raises:
            PostCheckTimeout: If the assertions still fail after the timeout
        """
        if not assertions:
            logger.info(f"No assertions for {device.device_id}, post-check trivially verified")
            return 0

        timeout = self.settings.timeout if timeout is None else timeout
        polls = 0
        try:
            async with timed_section("postcheck", device_id=device.device_id, assertions=len(assertions)):
                async for attempt in AsyncRetrying(
                    stop=stop_after_delay(timeout),
                    wait=wait_exponential(multiplier=1, min=self.settings.min_wait, max=self.settings.max_wait),
                    retry=retry_if_exception_type((_NotYet, TransportError)),
                    before_sleep=before_sleep_log(logger, logging.DEBUG),
                    reraise=True,
                ):
                    with attempt:
                        polls += 1
                        async with self.locks.session(device.device_id):
                            ok = await transport.check_assertions(device, assertions)
                        if not ok:
                            raise _NotYet()
        except (_NotYet, TransportError) as e:
            failing = await self._failing(transport, device, assertions)
            reason = "transport unavailable" if isinstance(e, TransportError) else "assertions not met"
            raise PostCheckTimeout(
                f"Post-check timed out after {timeout:g}s ({polls} polls, {reason}): "
                + ", ".join(failing),
                device_id=device.device_id,
                failing=failing,
            )

        logger.info(f"Post-check verified for {device.device_id} after {polls} poll(s)")
        return polls

    async def _failing(self, transport: TransportAdapter, device: DeviceConfig, assertions: list[Assertion]) -> list[str]:
        """Best-effort list of the assertions that still fail."""
        failing = []
        for assertion in assertions:
            try:
                async with self.locks.session(device.device_id):
                    ok = await transport.check_assertions(device, [assertion])
            except TransportError:
                ok = False
            if not ok:
                failing.append(assertion.describe())
        return failing
