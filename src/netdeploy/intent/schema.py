"""Intent record types and the dict/YAML parser.

The parser is deliberately lenient about *missing* fields: whether a field
is required depends on the template, so the renderer reports absences as
RenderError. Malformed values (wrong types, bad VLAN ids) fail here with
IntentError.
"""
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

from ..devices.base import Assertion
from ..errors import IntentError


@dataclass(frozen=True)
class InterfaceIntent:
    """Desired state for a single interface."""
    name: str
    description: Optional[str] = None
    address: Optional[str] = None  # CIDR, e.g. 10.1.1.1/24
    vlans: tuple[int, ...] = ()
    mode: Optional[str] = None     # access, trunk
    enabled: bool = True
    mtu: Optional[int] = None


@dataclass(frozen=True)
class BGPNeighbor:
    address: str
    remote_as: int
    description: Optional[str] = None


@dataclass(frozen=True)
class StaticRoute:
    prefix: str
    next_hop: str


@dataclass(frozen=True)
class RoutingIntent:
    """Routing parameters."""
    asn: Optional[int] = None
    router_id: Optional[str] = None
    neighbors: tuple[BGPNeighbor, ...] = ()
    networks: tuple[str, ...] = ()
    static_routes: tuple[StaticRoute, ...] = ()


@dataclass(frozen=True)
class ServicesIntent:
    """Management-plane services."""
    ntp_servers: tuple[str, ...] = ()
    logging_hosts: tuple[str, ...] = ()
    dns_servers: tuple[str, ...] = ()
    domain_name: Optional[str] = None


@dataclass(frozen=True)
class IntentRecord:
    """A versioned snapshot of one device's intent."""
    device_id: str
    version: str
    site: Optional[str] = None
    role: Optional[str] = None
    hostname: Optional[str] = None
    platform: Optional[str] = None
    template: Optional[str] = None
    interfaces: tuple[InterfaceIntent, ...] = ()
    routing: RoutingIntent = field(default_factory=RoutingIntent)
    services: ServicesIntent = field(default_factory=ServicesIntent)

    def to_context(self) -> dict[str, Any]:
        """Plain-dict view handed to templates."""
        return asdict(self)

    def assertions(self) -> list[Assertion]:
        """Operational expectations implied by this intent.

        Every enabled interface must be up and every BGP neighbor established.
        """
        result = [
            Assertion("interface_up", iface.name)
            for iface in self.interfaces
            if iface.enabled
        ]
        result.extend(
            Assertion("bgp_established", neighbor.address)
            for neighbor in self.routing.neighbors
        )
        return result


def _expand_vlans(value: Any, device_id: str) -> tuple[int, ...]:
    """Expand VLAN lists like [10, "20-22"] to (10, 20, 21, 22)."""
    if value is None:
        return ()
    if isinstance(value, (int, str)):
        value = [value]

    expanded: list[int] = []
    for item in value:
        text = str(item).strip()
        try:
            if "-" in text:
                start, end = (int(part) for part in text.split("-", 1))
                expanded.extend(range(start, end + 1))
            else:
                expanded.append(int(text))
        except ValueError:
            raise IntentError(f"Invalid VLAN '{item}'", device_id=device_id)

    for vlan in expanded:
        if vlan < 1 or vlan > 4094:
            raise IntentError(f"VLAN {vlan} out of range 1-4094", device_id=device_id)
    return tuple(expanded)


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def parse_intent(data: dict[str, Any], device_id: Optional[str] = None, version: Optional[str] = None) -> IntentRecord:
    """Parse a mapping into an IntentRecord.

    Args:
        data: Intent mapping (device, interfaces, routing, services, ...)
        device_id: Fallback device id when the mapping has none
        version: Fallback version when the mapping has none

    Raises:
        IntentError: If a value is malformed
    """
    if not isinstance(data, dict):
        raise IntentError("Intent document must be a mapping", device_id=device_id)

    device_id = data.get("device_id") or data.get("device") or device_id
    if not device_id:
        raise IntentError("Missing device_id")

    try:
        interfaces = tuple(
            _parse_interface(name, cfg, device_id)
            for name, cfg in _interface_items(data.get("interfaces"))
        )
        routing = _parse_routing(data.get("routing") or {})
        services = _parse_services(data.get("services") or {})
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        raise IntentError(f"Malformed intent for {device_id}: {e}", device_id=device_id)

    names = [iface.name for iface in interfaces]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise IntentError(f"Duplicate interfaces: {', '.join(duplicates)}", device_id=device_id)

    return IntentRecord(
        device_id=device_id,
        version=str(data.get("version", version or "1")),
        site=data.get("site"),
        role=data.get("role"),
        hostname=data.get("hostname"),
        platform=data.get("platform"),
        template=data.get("template"),
        interfaces=interfaces,
        routing=routing,
        services=services,
    )


def _interface_items(value: Any) -> list[tuple[str, dict]]:
    """Interfaces may be a list of mappings with 'name' or a name-keyed mapping."""
    if not value:
        return []
    if isinstance(value, dict):
        return [(str(name), cfg or {}) for name, cfg in value.items()]
    return [(str(item["name"]), item) for item in value]


def _parse_interface(name: str, config: dict[str, Any], device_id: str) -> InterfaceIntent:
    mtu = config.get("mtu")
    return InterfaceIntent(
        name=name,
        description=config.get("description"),
        address=config.get("address"),
        vlans=_expand_vlans(config.get("vlans"), device_id),
        mode=config.get("mode"),
        enabled=bool(config.get("enabled", True)),
        mtu=int(mtu) if mtu is not None else None,
    )


def _parse_routing(config: dict[str, Any]) -> RoutingIntent:
    bgp = config.get("bgp") or {}
    asn = config.get("asn", bgp.get("asn"))
    neighbors = config.get("neighbors", bgp.get("neighbors")) or []
    return RoutingIntent(
        asn=int(asn) if asn is not None else None,
        router_id=config.get("router_id", bgp.get("router_id")),
        neighbors=tuple(
            BGPNeighbor(
                address=str(n["address"]),
                remote_as=int(n["remote_as"]),
                description=n.get("description"),
            )
            for n in neighbors
        ),
        networks=_as_tuple(config.get("networks", bgp.get("networks"))),
        static_routes=tuple(
            StaticRoute(prefix=str(r["prefix"]), next_hop=str(r["next_hop"]))
            for r in config.get("static_routes") or []
        ),
    )


def _parse_services(config: dict[str, Any]) -> ServicesIntent:
    return ServicesIntent(
        ntp_servers=_as_tuple(config.get("ntp_servers", config.get("ntp"))),
        logging_hosts=_as_tuple(config.get("logging_hosts", config.get("syslog"))),
        dns_servers=_as_tuple(config.get("dns_servers", config.get("dns"))),
        domain_name=config.get("domain_name"),
    )
