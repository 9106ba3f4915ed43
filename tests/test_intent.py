"""Tests for intent parsing and the YAML intent store."""
import pytest
import yaml

from netdeploy.devices import Assertion
from netdeploy.errors import IntentError
from netdeploy.intent import MemoryIntentStore, YamlIntentStore, parse_intent

from conftest import BASE_INTENT, make_intent


class TestParseIntent:
    """Tests for parse_intent."""

    def test_parse_full_record(self):
        record = parse_intent({
            "device": "core-1",
            "version": 4,
            "site": "ams1",
            "role": "core",
            "hostname": "core-1",
            "interfaces": {
                "eth0": {"description": "Uplink", "address": "10.1.1.1/24", "mtu": "9000"},
                "eth1": {"vlans": [10, "20-22"], "mode": "trunk", "enabled": False},
            },
            "routing": {
                "bgp": {"asn": 65001, "neighbors": [{"address": "10.0.0.2", "remote_as": "65002"}]},
                "static_routes": [{"prefix": "0.0.0.0/0", "next_hop": "10.1.1.254"}],
            },
            "services": {"ntp": "10.0.0.100", "syslog": ["10.0.0.200"]},
        })

        assert record.device_id == "core-1"
        assert record.version == "4"
        assert [i.name for i in record.interfaces] == ["eth0", "eth1"]
        assert record.interfaces[0].mtu == 9000
        assert record.interfaces[1].vlans == (10, 20, 21, 22)
        assert record.routing.asn == 65001
        assert record.routing.neighbors[0].remote_as == 65002
        assert record.services.ntp_servers == ("10.0.0.100",)

    def test_assertions(self):
        record = parse_intent({
            "device_id": "core-1",
            "interfaces": [
                {"name": "eth0"},
                {"name": "eth1", "enabled": False},
            ],
            "routing": {"asn": 65001, "neighbors": [{"address": "10.0.0.2", "remote_as": 65002}]},
        })
        assert record.assertions() == [
            Assertion("interface_up", "eth0"),
            Assertion("bgp_established", "10.0.0.2"),
        ]

    def test_missing_fields_are_left_to_the_renderer(self):
        record = parse_intent({"device_id": "core-1"})
        assert record.hostname is None
        assert record.version == "1"

    @pytest.mark.parametrize("vlans", [[0], [4095], ["abc"], ["10-x"]])
    def test_bad_vlans(self, vlans):
        with pytest.raises(IntentError):
            parse_intent({"device_id": "core-1", "interfaces": [{"name": "eth0", "vlans": vlans}]})

    def test_duplicate_interfaces(self):
        with pytest.raises(IntentError, match="Duplicate interfaces: eth0"):
            parse_intent({"device_id": "core-1", "interfaces": [{"name": "eth0"}, {"name": "eth0"}]})

    def test_malformed_neighbor(self):
        with pytest.raises(IntentError, match="Malformed"):
            parse_intent({"device_id": "core-1", "routing": {"neighbors": [{"address": "10.0.0.2"}]}})

    def test_missing_device_id(self):
        with pytest.raises(IntentError):
            parse_intent({"hostname": "x"})

    def test_context_is_plain_data(self):
        context = make_intent().to_context()
        assert context["interfaces"][0]["name"] == "eth0"
        assert context["services"]["ntp_servers"] == ("10.0.0.100",)


class TestYamlIntentStore:
    """Tests for the YAML directory store."""

    @pytest.fixture
    def store(self, tmp_path):
        versioned = tmp_path / "core-1"
        versioned.mkdir()
        for version in ("2", "10", "9"):
            data = dict(BASE_INTENT, hostname=f"core-1-v{version}")
            (versioned / f"{version}.yaml").write_text(yaml.safe_dump(data))
        (tmp_path / "core-2.yaml").write_text(yaml.safe_dump(dict(BASE_INTENT, device_id="core-2", version=3)))
        return YamlIntentStore(tmp_path)

    def test_list_devices(self, store):
        assert store.list_devices() == ["core-1", "core-2"]

    def test_versions_sort_numerically(self, store):
        assert store.list_versions("core-1") == ["2", "9", "10"]

    def test_latest_version(self, store):
        record = store.get_intent("core-1")
        assert record.version == "10"
        assert record.hostname == "core-1-v10"

    def test_specific_version(self, store):
        assert store.get_intent("core-1", "2").hostname == "core-1-v2"

    def test_flat_file(self, store):
        assert store.list_versions("core-2") == ["3"]
        assert store.get_intent("core-2").device_id == "core-2"

    def test_unknown_device(self, store):
        with pytest.raises(IntentError, match="No intent found"):
            store.get_intent("core-9")

    def test_unknown_version(self, store):
        with pytest.raises(IntentError, match="have: 2, 9, 10"):
            store.get_intent("core-1", "5")

    def test_device_mismatch(self, tmp_path):
        (tmp_path / "core-3.yaml").write_text(yaml.safe_dump(dict(BASE_INTENT, device_id="core-1")))
        with pytest.raises(IntentError, match="declares device core-1"):
            YamlIntentStore(tmp_path).get_intent("core-3")

    def test_unreadable_file(self, tmp_path):
        (tmp_path / "core-4.yaml").write_text("device_id: [unclosed")
        with pytest.raises(IntentError, match="Cannot read"):
            YamlIntentStore(tmp_path).get_intent("core-4")

    def test_missing_dir(self, tmp_path):
        assert YamlIntentStore(tmp_path / "nope").list_devices() == []


class TestMemoryIntentStore:
    def test_latest_and_versions(self):
        store = MemoryIntentStore([make_intent(version="1"), make_intent(version="2")])
        assert store.list_devices() == ["core-1"]
        assert store.get_intent("core-1").version == "2"
        with pytest.raises(IntentError):
            store.get_intent("core-1", "3")
