# errors.py
"""
Error kinds raised by the scale link.

Each class carries a ``remedy`` – the message shown to the user, because
every kind needs a different fix (grant a permission, switch the radio
on, move closer to the shelf, ...).
"""

from typing import List, Sequence


class ScaleLinkError(Exception):
    """Base exception for the scale link."""

    remedy = "Try again."

    def __init__(self, reason: str = ""):
        super().__init__(reason or self.remedy)
        self.reason = reason or self.remedy


class PermissionDenied(ScaleLinkError):
    remedy = "Grant the Bluetooth and location permissions, then scan again."


class RadioPoweredOff(ScaleLinkError):
    remedy = "Bluetooth is turned off or unavailable. Switch it on and scan again."


class PeripheralNotFound(ScaleLinkError):
    """Scan timed out without a match. ``discovered`` keeps what *was* seen."""

    remedy = (
        "Could not find the scale. Please make sure:\n"
        "1. The scale is powered on\n"
        "2. Bluetooth is enabled on this machine\n"
        "3. The scale is in range\n"
        "4. The configured name or address matches the scale"
    )

    def __init__(self, reason: str = "", discovered: Sequence = ()):
        super().__init__(reason)
        self.discovered: List = list(discovered)

    def describe(self) -> str:
        """User-facing message, listing the nearby devices if any were seen."""
        if not self.discovered:
            return self.remedy
        lines = [
            f"- {d.display_name} ({d.address}) {d.rssi if d.rssi is not None else '?'} dBm"
            for d in self.discovered
        ]
        return (
            "Found devices but none matched the scale. Available devices:\n"
            + "\n".join(lines)
        )


class ConnectionFailed(ScaleLinkError):
    remedy = "Could not connect to the scale. Move closer and scan again."


class SubscriptionFailed(ScaleLinkError):
    remedy = "Connected, but the scale does not stream readings. Check the peripheral profile."


class DecodeFailed(ScaleLinkError):
    """A frame did not yield a usable weight. ``payload`` is the cleaned, truncated text."""

    remedy = "The scale sent a frame in an unknown format."

    def __init__(self, reason: str = "", payload: str = ""):
        super().__init__(reason)
        self.payload = payload


class SessionCancelled(ScaleLinkError):
    """The attempt was torn down by ``disconnect()`` or by a newer scan."""

    remedy = "The connection attempt was cancelled."
