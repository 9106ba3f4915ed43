"""Simulated lab devices.

An in-memory device family for labs, dry runs and tests. Operational state
is derived from the running config: an interface is up when it is
configured and not shut down, a BGP peer is established when a neighbor
statement exists. Failure knobs make every error path reachable:

    reject_patterns       apply raises ApplyError when a line matches
    transport_failures    the next N calls raise TransportError
    unreachable           every call raises TransportError
    unreachable_after_apply  the device drops off right after an apply
    down_interfaces       interfaces that never come up
    stuck_peers           BGP peers that never establish

With ``options.state_file`` the running config survives across processes.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ..errors import ApplyError, TransportError
from .base import ApplyResult, Assertion, DeviceConfig

logger = logging.getLogger(__name__)

INTERFACE_LINE = re.compile(r"^interface (\S+)$|^set interfaces (\S+) ")
NEIGHBOR_LINE = re.compile(r"^ neighbor (\S+) |^set protocols bgp neighbor (\S+) ")


@dataclass
class SimulatedDevice:
    """State of one lab device."""
    device_id: str
    running_config: str = ""
    reject_patterns: list[str] = field(default_factory=list)
    transport_failures: int = 0
    unreachable: bool = False
    unreachable_after_apply: bool = False
    down_interfaces: set[str] = field(default_factory=set)
    stuck_peers: set[str] = field(default_factory=set)
    apply_count: int = 0
    history: list[str] = field(default_factory=list)
    call_log: list[str] = field(default_factory=list)

    def interfaces_up(self) -> set[str]:
        up: set[str] = set()
        current: Optional[str] = None
        shut: set[str] = set()
        for line in self.running_config.splitlines():
            match = INTERFACE_LINE.match(line)
            if match:
                name = match.group(1) or match.group(2)
                up.add(name)
                current = name if match.group(1) else None
                if match.group(2) and line.rstrip().endswith(" disable"):
                    shut.add(name)
                continue
            if current and line.strip() == "shutdown":
                shut.add(current)
            elif not line.startswith(" "):
                current = None
        return up - shut - self.down_interfaces

    def established_peers(self) -> set[str]:
        peers = set()
        for line in self.running_config.splitlines():
            match = NEIGHBOR_LINE.match(line)
            if match:
                peers.add(match.group(1) or match.group(2))
        return peers - self.stuck_peers


class SimulatedTransport:
    """Transport variant backed by SimulatedDevice records."""

    family = "simulated"

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.devices: dict[str, SimulatedDevice] = {}

    def device(self, device_id: str, **kwargs) -> SimulatedDevice:
        """Get or create the simulated state for a device."""
        if device_id not in self.devices:
            self.devices[device_id] = SimulatedDevice(device_id=device_id, **kwargs)
        else:
            for key, value in kwargs.items():
                setattr(self.devices[device_id], key, value)
        return self.devices[device_id]

    def _state(self, device: DeviceConfig) -> SimulatedDevice:
        sim = self.devices.get(device.device_id)
        if sim is None:
            sim = self.device(
                device.device_id,
                running_config=device.options.get("initial_config", ""),
                reject_patterns=list(device.options.get("reject_patterns", [])),
                down_interfaces=set(device.options.get("down_interfaces", [])),
                stuck_peers=set(device.options.get("stuck_peers", [])),
            )
        state_file = device.options.get("state_file")
        if state_file and Path(state_file).exists():
            data = yaml.safe_load(Path(state_file).read_text()) or {}
            sim.running_config = data.get("running_config", sim.running_config)
        return sim

    def _save(self, device: DeviceConfig, sim: SimulatedDevice) -> None:
        state_file = device.options.get("state_file")
        if state_file:
            path = Path(state_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(yaml.safe_dump({"running_config": sim.running_config}))

    async def _enter(self, device: DeviceConfig, operation: str) -> SimulatedDevice:
        if self.latency:
            await asyncio.sleep(self.latency)
        sim = self._state(device)
        sim.call_log.append(operation)
        if sim.unreachable:
            raise TransportError(f"{device.device_id} unreachable", device_id=device.device_id)
        if sim.transport_failures > 0:
            sim.transport_failures -= 1
            raise TransportError(f"{device.device_id} connection reset", device_id=device.device_id)
        return sim

    async def read_config(self, device: DeviceConfig) -> str:
        sim = await self._enter(device, "read_config")
        return sim.running_config

    async def apply(self, device: DeviceConfig, text: str) -> ApplyResult:
        sim = await self._enter(device, "apply")
        for pattern in sim.reject_patterns:
            for number, line in enumerate(text.splitlines(), start=1):
                if re.search(pattern, line):
                    raise ApplyError(
                        f"{device.device_id} rejected line {number}: {line.strip()}",
                        device_id=device.device_id,
                        output=f"% Invalid input detected at line {number}",
                    )

        changed = sim.running_config != text
        sim.running_config = text
        sim.apply_count += 1
        sim.history.append(text)
        self._save(device, sim)
        if sim.unreachable_after_apply:
            sim.unreachable = True
        logger.debug(f"Simulated apply on {device.device_id} (#{sim.apply_count}, changed={changed})")
        return ApplyResult(success=True, output="ok", changed=changed)

    async def check_assertions(self, device: DeviceConfig, assertions: list[Assertion]) -> bool:
        sim = await self._enter(device, "check_assertions")
        up = sim.interfaces_up()
        peers = sim.established_peers()
        for assertion in assertions:
            if assertion.kind == "interface_up" and assertion.target not in up:
                return False
            if assertion.kind == "bgp_established" and assertion.target not in peers:
                return False
        return True
