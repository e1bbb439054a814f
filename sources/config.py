# config.py
"""
Deployment configuration – change only if your scale firmware differs.

Two firmware revisions are known in the field and they disagree on how
the notify characteristic is addressed and on the frame layout, so both
are captured as a :class:`ScaleProfile` and picked per deployment.
"""

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from bleak.uuids import normalize_uuid_str

from models import PeripheralIdentity

# ----------------------------------------------------------------------
# Frame formats understood by frame_decoder.FrameDecoder
# ----------------------------------------------------------------------
FORMAT_SERIAL = "serial"    # "Weight: 342.50 g, Object: No Object"
FORMAT_SHELF = "shelf"      # "Shelf: Shelf2, Weight: 120.0 g, Object: Object Detected"

# Nordic UART service, TX characteristic (peripheral → central)
NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"


@dataclass(frozen=True)
class ScaleProfile:
    """
    Everything that depends on the peripheral firmware revision.

    ``service_uuid`` / ``characteristic_uuid`` accept the 16-bit short
    form (``"FFE1"``) or a full 128-bit UUID; both are normalised to the
    lower-case 128-bit string bleak reports.
    """
    name: str
    service_uuid: str
    characteristic_uuid: str
    identity: PeripheralIdentity
    frame_format: str = FORMAT_SERIAL
    location: str = "Shelf"

    def __post_init__(self):
        object.__setattr__(self, "service_uuid", normalize_uuid_str(self.service_uuid))
        object.__setattr__(self, "characteristic_uuid", normalize_uuid_str(self.characteristic_uuid))
        if self.frame_format not in (FORMAT_SERIAL, FORMAT_SHELF):
            raise ValueError(f"unknown frame format: {self.frame_format!r}")


PROFILES: Dict[str, ScaleProfile] = {
    "esp32-serial": ScaleProfile(
        name="esp32-serial",
        service_uuid="FFE0",
        characteristic_uuid="FFE1",
        identity=PeripheralIdentity(name="ESP32_Scale_BT"),
        frame_format=FORMAT_SERIAL,
        location="Scale",
    ),
    "esp32-nus": ScaleProfile(
        name="esp32-nus",
        service_uuid=NUS_SERVICE_UUID,
        characteristic_uuid=NUS_TX_CHAR_UUID,
        identity=PeripheralIdentity(name="ESP32_Scale"),
        frame_format=FORMAT_SHELF,
        location="Shelf",
    ),
}
DEFAULT_PROFILE = "esp32-serial"


@dataclass(frozen=True)
class MonitorSettings:
    """Thresholds and timings. Units of weight follow the firmware (grams)."""
    low_stock_threshold: float = 350.0
    shock_threshold: float = 0.5
    jitter_epsilon: float = 0.01
    presence_epsilon: float = 0.1
    liveness_window_s: float = 2.0
    liveness_interval_s: float = 1.0
    history_size: int = 10
    shock_history_size: int = 10
    snapshot_interval_s: float = 3600.0
    snapshot_history_size: int = 24
    status_poll_interval_s: float = 5.0
    scan_timeout_s: float = 10.0
    connect_timeout_s: float = 10.0
    diagnostic_payload_len: int = 80


@dataclass(frozen=True)
class AppConfig:
    profile: ScaleProfile = field(default_factory=lambda: PROFILES[DEFAULT_PROFILE])
    settings: MonitorSettings = field(default_factory=MonitorSettings)


def _profile_from_dict(raw: Dict[str, Any], base: ScaleProfile) -> ScaleProfile:
    known = {"name", "service_uuid", "characteristic_uuid", "address",
             "device_name", "frame_format", "location"}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"unknown profile keys: {sorted(unknown)}")

    identity = base.identity
    if "address" in raw or "device_name" in raw:
        identity = PeripheralIdentity(address=raw.get("address"), name=raw.get("device_name"))
    return ScaleProfile(
        name=raw.get("name", base.name),
        service_uuid=raw.get("service_uuid", base.service_uuid),
        characteristic_uuid=raw.get("characteristic_uuid", base.characteristic_uuid),
        identity=identity,
        frame_format=raw.get("frame_format", base.frame_format),
        location=raw.get("location", base.location),
    )


def load_config(path: Optional[Path] = None, profile_name: str = DEFAULT_PROFILE) -> AppConfig:
    """
    Build the configuration from a built-in profile, optionally overridden
    by a JSON file of the form::

        {"profile": {"service_uuid": "FFE0", "device_name": "Scale"},
         "settings": {"low_stock_threshold": 500}}

    Unknown keys raise ``ValueError`` so typos do not go unnoticed.
    """
    if profile_name not in PROFILES:
        raise ValueError(f"unknown profile {profile_name!r}, choose from {sorted(PROFILES)}")
    profile = PROFILES[profile_name]
    settings = MonitorSettings()
    if path is None:
        return AppConfig(profile=profile, settings=settings)

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    unknown = set(raw) - {"profile", "settings"}
    if unknown:
        raise ValueError(f"unknown config sections: {sorted(unknown)}")

    if "profile" in raw:
        profile = _profile_from_dict(raw["profile"], profile)
    if "settings" in raw:
        allowed = {f.name for f in fields(MonitorSettings)}
        bad = set(raw["settings"]) - allowed
        if bad:
            raise ValueError(f"unknown settings: {sorted(bad)}")
        settings = replace(settings, **raw["settings"])
    return AppConfig(profile=profile, settings=settings)
