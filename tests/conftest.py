"""Shared fixtures: fast pipeline settings, simulated inventory, intent records."""
import copy

import pytest

from netdeploy.config import DeviceInventory, PipelineSettings
from netdeploy.config.settings import PostCheckSettings, RetrySettings
from netdeploy.config_engine import DeploymentEngine
from netdeploy.intent import MemoryIntentStore, parse_intent
from netdeploy.utils.audit_log import AuditLog

BASE_INTENT = {
    "device_id": "core-1",
    "version": "1",
    "site": "lab",
    "role": "core",
    "hostname": "core-1",
    "interfaces": [
        {"name": "eth0", "description": "Uplink", "address": "10.1.1.1/24"},
    ],
    "services": {
        "ntp_servers": ["10.0.0.100"],
        "logging_hosts": ["10.0.0.200"],
    },
}

# A valid configuration already running on a device before netdeploy manages it
PRIOR_CLI = """hostname core-1
!
interface eth9
 description Legacy
!
ntp server 10.0.0.99
logging host 10.0.0.200
end
"""


def make_intent(device_id: str = "core-1", version: str = "1", **overrides):
    data = copy.deepcopy(BASE_INTENT)
    data.update(device_id=device_id, hostname=device_id, version=version)
    data.update(overrides)
    return parse_intent(data)


def with_bgp(intent_kwargs: dict = None, neighbor: str = "10.0.0.2") -> dict:
    """Intent overrides adding a BGP session."""
    kwargs = dict(intent_kwargs or {})
    kwargs["routing"] = {
        "asn": 65001,
        "router_id": "10.255.0.1",
        "neighbors": [{"address": neighbor, "remote_as": 65002}],
    }
    return kwargs


@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(
        intent_dir=tmp_path / "intent",
        state_dir=tmp_path / "state",
        audit_log=None,
        concurrency=4,
        retry=RetrySettings(max_attempts=2, min_wait=0, max_wait=0, timeout=5),
        postcheck=PostCheckSettings(timeout=0.3, min_wait=0, max_wait=0.05),
    )


@pytest.fixture
def inventory():
    return DeviceInventory.from_dict({
        "devices": {
            "core-1": {"type": "simulated", "host": "10.0.0.1", "site": "lab"},
            "core-2": {"type": "simulated", "host": "10.0.0.2", "site": "lab"},
        },
        "groups": {"core": ["core-1", "core-2"]},
    })


@pytest.fixture
def intents():
    return MemoryIntentStore([make_intent("core-1"), make_intent("core-2")])


@pytest.fixture
def audit():
    return AuditLog()


@pytest.fixture
def engine(settings, inventory, intents, audit):
    return DeploymentEngine(settings, inventory, intents, audit=audit)


@pytest.fixture
def sim(inventory):
    """The shared SimulatedTransport behind every simulated device."""
    return inventory.get_transport("core-1")
