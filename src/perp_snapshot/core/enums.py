from __future__ import annotations

from enum import StrEnum


class UniverseStrategy(StrEnum):
    VOLUME = "volume"
    GAINERS = "gainers"


class SideDataMode(StrEnum):
    CORE_ONLY = "core_only"
    UNIVERSE = "universe"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


INTERVAL_LABELS: dict[str, str] = {
    "4h": "H4",
    "1h": "H1",
    "15m": "M15",
}
