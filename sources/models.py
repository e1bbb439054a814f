# models.py
"""
Dataclasses shared by the connection, decoder and aggregator.
Readings, identities and events are frozen; only the session and the
telemetry state are mutated, each by exactly one owner.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional, Tuple


# ----------------------------------------------------------------------
# Peripheral identity & scan results
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class PeripheralIdentity:
    """What we look for among scan results: an address and/or a name fragment."""
    address: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if not self.address and not self.name:
            raise ValueError("PeripheralIdentity needs an address or a name")

    def matches(self, peripheral: "DiscoveredPeripheral") -> bool:
        # address equality OR name containment, both case-insensitive
        if self.address and peripheral.address and \
                self.address.lower() == peripheral.address.lower():
            return True
        if self.name:
            needle = self.name.lower()
            for candidate in (peripheral.name, peripheral.local_name):
                if candidate and needle in candidate.lower():
                    return True
        return False


@dataclass(frozen=True)
class DiscoveredPeripheral:
    address: str
    name: Optional[str] = None
    local_name: Optional[str] = None
    rssi: Optional[int] = None
    connectable: Optional[bool] = None      # None: backend does not tell
    service_uuids: Tuple[str, ...] = ()
    handle: Any = field(default=None, compare=False, repr=False)   # backend device object

    @property
    def display_name(self) -> str:
        return self.name or self.local_name or "Unknown"


# ----------------------------------------------------------------------
# Connection lifecycle
# ----------------------------------------------------------------------
class ConnectionState(Enum):
    IDLE = "idle"
    PERMISSION_PENDING = "permission_pending"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    SUBSCRIBED = "subscribed"
    DISCONNECTING = "disconnecting"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionState.IDLE, ConnectionState.ERROR)


@dataclass
class ConnectionSession:
    """Zero-or-one live link. Owned by ScaleConnection only."""
    identity: PeripheralIdentity
    session_id: int
    state: ConnectionState = ConnectionState.IDLE
    peripheral: Optional[DiscoveredPeripheral] = None
    link: Any = None                        # RadioLink once connected
    characteristic: Optional[str] = None
    frames_received: int = 0
    degraded: bool = False
    closed: bool = False


# ----------------------------------------------------------------------
# Telemetry
# ----------------------------------------------------------------------
class Presence(Enum):
    PRESENT = "present"
    ABSENT = "absent"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SensorReading:
    weight: float
    presence: Presence
    captured_at: datetime
    presence_inferred: bool = False
    location: Optional[str] = None


@dataclass(frozen=True)
class ShockEvent:
    timestamp: datetime
    weight: float
    location: str
    delta: float
    threshold_exceeded: bool = True


@dataclass(frozen=True)
class DecodeFailure:
    """A frame that did not decode, kept for the diagnostics screen."""
    payload: str
    reason: str
    received_at: datetime


@dataclass
class ShelfStatus:
    """Latest reading and low-stock flag of one shelf."""
    location: str
    latest: SensorReading
    low_stock: bool = False


@dataclass
class TelemetryState:
    history_size: int = 10
    snapshot_size: int = 24
    latest: Optional[SensorReading] = None
    history: Deque[SensorReading] = field(init=False)
    snapshots: Deque[SensorReading] = field(init=False)
    low_stock: bool = False               # any shelf low
    # shelf id (lower case) -> status
    shelves: Dict[str, ShelfStatus] = field(default_factory=dict)
    monitoring: bool = False
    last_update: Optional[datetime] = None
    last_raw_payload: str = ""
    last_failure: Optional[DecodeFailure] = None
    decode_failures: int = 0
    consecutive_failures: int = 0

    def __post_init__(self):
        self.history = deque(maxlen=self.history_size)
        self.snapshots = deque(maxlen=self.snapshot_size)
