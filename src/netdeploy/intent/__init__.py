"""Intent client: typed intent records and the read-only intent store."""
from .schema import (
    IntentRecord,
    InterfaceIntent,
    RoutingIntent,
    BGPNeighbor,
    StaticRoute,
    ServicesIntent,
    parse_intent,
)
from .store import IntentStore, YamlIntentStore, MemoryIntentStore

__all__ = [
    "IntentRecord",
    "InterfaceIntent",
    "RoutingIntent",
    "BGPNeighbor",
    "StaticRoute",
    "ServicesIntent",
    "parse_intent",
    "IntentStore",
    "YamlIntentStore",
    "MemoryIntentStore",
]
