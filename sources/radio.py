#!/usr/bin/env python3
"""radio.py
Boundary between the connection state machine and the Bluetooth stack.

``RadioBackend`` / ``RadioLink`` describe the few primitives the state
machine needs (scan, connect, enumerate, notify, disconnect). ``BleakRadio``
implements them with bleak; tests plug in a fake backend instead.

Every bleak error is translated here into one of the kinds of
:mod:`errors`, so nothing above this module imports bleak.
"""
import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Callable, Dict, Optional, Tuple

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from app_logger import logger
from errors import ConnectionFailed, RadioPoweredOff, SubscriptionFailed
from models import DiscoveredPeripheral

# service uuid -> {characteristic uuid: properties}
ServiceMap = Dict[str, Dict[str, Tuple[str, ...]]]

# Fragments bleak backends use when the adapter is off or missing.
_RADIO_OFF_HINTS = ("turned off", "powered off", "poweredoff", "not available",
                    "no bluetooth adapter", "adapter not found", "not powered")


def _is_radio_off(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(hint in text for hint in _RADIO_OFF_HINTS)


# CoreBluetooth passes its advertisement dictionary in platform_data
_CONNECTABLE_KEY = "kCBAdvDataIsConnectable"


def _connectable(advertisement_data: AdvertisementData) -> Optional[bool]:
    """The connectable flag where the backend reports one, else ``None``."""
    for item in getattr(advertisement_data, "platform_data", None) or ():
        if isinstance(item, Mapping) and _CONNECTABLE_KEY in item:
            return bool(item[_CONNECTABLE_KEY])
    return None


class RadioLink(ABC):
    """An established link to one peripheral."""

    address: str

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Ask the link layer, not our own bookkeeping."""

    @abstractmethod
    def describe_services(self) -> ServiceMap:
        ...

    @abstractmethod
    async def start_notify(self, characteristic: str, handler: Callable[[bytes], None]) -> None:
        """Raise :class:`SubscriptionFailed` when notifications cannot be enabled."""

    @abstractmethod
    async def stop_notify(self, characteristic: str) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the link. Never raises: a dead link is already released."""


class RadioBackend(ABC):
    @abstractmethod
    async def ensure_ready(self) -> None:
        """Raise :class:`RadioPoweredOff` when the adapter cannot be used."""

    @abstractmethod
    async def start_scan(self, on_found: Callable[[DiscoveredPeripheral], None]) -> None:
        ...

    @abstractmethod
    async def stop_scan(self) -> None:
        ...

    @abstractmethod
    async def connect(self, peripheral: DiscoveredPeripheral, timeout: float,
                      on_disconnect: Callable[[], None]) -> RadioLink:
        """Raise :class:`ConnectionFailed` on any link-layer failure."""

    def connected_link(self, address: str,
                       on_disconnect: Callable[[], None]) -> Optional[RadioLink]:
        """
        A link to ``address`` that is still up, if the backend holds one.
        Drops on a returned link are reported to ``on_disconnect`` from now on.
        """
        return None

    async def close(self) -> None:
        pass


# ----------------------------------------------------------------------
# bleak implementation
# ----------------------------------------------------------------------
class BleakLink(RadioLink):
    def __init__(self, client: BleakClient):
        self.client = client
        self.address = client.address

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    def describe_services(self) -> ServiceMap:
        services: ServiceMap = {}
        for service in self.client.services:
            services[service.uuid.lower()] = {
                char.uuid.lower(): tuple(char.properties) for char in service.characteristics
            }
        return services

    async def start_notify(self, characteristic: str, handler: Callable[[bytes], None]) -> None:
        def _on_notify(_sender, data: bytearray) -> None:
            handler(bytes(data))

        try:
            await self.client.start_notify(characteristic, _on_notify)
        except (BleakError, ValueError) as exc:
            raise SubscriptionFailed(f"cannot subscribe to {characteristic}: {exc}") from exc

    async def stop_notify(self, characteristic: str) -> None:
        if not self.client.is_connected:
            return
        try:
            await self.client.stop_notify(characteristic)
        except (BleakError, ValueError) as exc:
            logger.warning("stop_notify on %s failed: %s", characteristic, exc)

    async def disconnect(self) -> None:
        try:
            await self.client.disconnect()
        except BleakError as exc:
            logger.warning("disconnect from %s failed: %s", self.address, exc)


class BleakRadio(RadioBackend):
    """
    Process-wide radio manager on top of bleak.

    The scanner is built lazily and dropped whenever bleak reports an
    error, so the next :meth:`ensure_ready` starts from a fresh one.
    """

    def __init__(self):
        self._scanner: Optional[BleakScanner] = None
        self._on_found: Optional[Callable[[DiscoveredPeripheral], None]] = None
        self._links: Dict[str, BleakLink] = {}
        # address (lower case) -> who hears about a drop of that link
        self._on_disconnect: Dict[str, Callable[[], None]] = {}
        self._unusable = False

    def _get_scanner(self) -> BleakScanner:
        if self._scanner is None or self._unusable:
            if self._scanner is not None:
                logger.warning("radio manager in unexpected state – reinitialising")
            logger.info("initialising BLE scanner")
            # open filter: the firmware does not reliably advertise its service
            self._scanner = BleakScanner(detection_callback=self._detection_callback)
            self._unusable = False
        return self._scanner

    def _drop_scanner(self) -> None:
        self._unusable = True

    async def ensure_ready(self) -> None:
        try:
            self._get_scanner()
        except BleakError as exc:
            self._drop_scanner()
            if _is_radio_off(exc):
                raise RadioPoweredOff(str(exc)) from exc
            raise RadioPoweredOff(f"Bluetooth adapter unusable: {exc}") from exc

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------
    def _detection_callback(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        """Passed to ``BleakScanner``; wraps every hit into a DiscoveredPeripheral."""
        try:
            if self._on_found is None:
                return
            self._on_found(DiscoveredPeripheral(
                address=device.address,
                name=device.name,
                local_name=advertisement_data.local_name,
                rssi=advertisement_data.rssi,
                connectable=_connectable(advertisement_data),
                service_uuids=tuple(advertisement_data.service_uuids),
                handle=device,
            ))
        except asyncio.CancelledError:
            # Propagate cancellation so the outer event loop can shut down cleanly.
            raise

    async def start_scan(self, on_found: Callable[[DiscoveredPeripheral], None]) -> None:
        scanner = self._get_scanner()
        self._on_found = on_found
        try:
            await scanner.start()
        except BleakError as exc:
            self._on_found = None
            self._drop_scanner()
            if _is_radio_off(exc):
                raise RadioPoweredOff(str(exc)) from exc
            raise ConnectionFailed(f"scan could not start: {exc}") from exc

    async def stop_scan(self) -> None:
        self._on_found = None
        if self._scanner is None:
            return
        try:
            await self._scanner.stop()
        except BleakError as exc:
            logger.warning("stopping scan failed: %s", exc)
            self._drop_scanner()

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------
    async def connect(self, peripheral: DiscoveredPeripheral, timeout: float,
                      on_disconnect: Callable[[], None]) -> RadioLink:
        key = peripheral.address.lower()
        self._on_disconnect[key] = on_disconnect
        client = BleakClient(
            peripheral.handle or peripheral.address,
            disconnected_callback=lambda _client: self._link_lost(key),
            timeout=timeout,
        )
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            await BleakLink(client).disconnect()
            if _is_radio_off(exc):
                raise RadioPoweredOff(str(exc)) from exc
            raise ConnectionFailed(f"cannot connect to {peripheral.address}: {exc}") from exc
        except asyncio.CancelledError:
            await BleakLink(client).disconnect()
            raise

        link = BleakLink(client)
        self._links[key] = link
        return link

    def _link_lost(self, key: str) -> None:
        callback = self._on_disconnect.get(key)
        if callback is not None:
            callback()

    def connected_link(self, address: str,
                       on_disconnect: Callable[[], None]) -> Optional[RadioLink]:
        key = address.lower()
        link = self._links.get(key)
        if link is None:
            return None
        if not link.is_connected:
            del self._links[key]
            return None
        self._on_disconnect[key] = on_disconnect
        return link

    async def close(self) -> None:
        await self.stop_scan()
        for link in list(self._links.values()):
            await link.disconnect()
        self._links.clear()
        self._on_disconnect.clear()
        self._scanner = None
