"""Pytest fixtures for the scale link: a scripted radio backend and friends."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pytest

from config import MonitorSettings, ScaleProfile
from errors import SubscriptionFailed
from models import DiscoveredPeripheral, PeripheralIdentity
from radio import RadioBackend, RadioLink

SERVICE = "0000ffe0-0000-1000-8000-00805f9b34fb"
CHAR = "0000ffe1-0000-1000-8000-00805f9b34fb"


class FakeLink(RadioLink):
    def __init__(self, address: str, log: list, services=None, fail_notify: bool = False):
        self.address = address
        self.connected = True
        self.services = services if services is not None else {SERVICE: {CHAR: ("read", "notify")}}
        self.fail_notify = fail_notify
        self.handlers: Dict[str, Callable[[bytes], None]] = {}
        self.stopped: List[str] = []
        self.disconnects = 0
        self.log = log

    @property
    def is_connected(self) -> bool:
        return self.connected

    def describe_services(self):
        return self.services

    async def start_notify(self, characteristic, handler):
        if self.fail_notify:
            raise SubscriptionFailed(f"cannot subscribe to {characteristic}")
        self.handlers[characteristic] = handler

    async def stop_notify(self, characteristic):
        self.stopped.append(characteristic)
        self.handlers.pop(characteristic, None)

    async def disconnect(self):
        self.disconnects += 1
        self.connected = False
        self.log.append(("disconnect", self.address))

    def push(self, data: bytes) -> None:
        for handler in list(self.handlers.values()):
            handler(data)


class FakeRadio(RadioBackend):
    """Scripted stand-in for BleakRadio; ``log`` records every call in order."""

    def __init__(self):
        self.log: list = []
        self.scanning = False
        self.advertise_on_scan: List[DiscoveredPeripheral] = []
        self.ready_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.connect_gates: Dict[str, asyncio.Event] = {}
        self.link_options: Dict[str, dict] = {}
        # seconds the radio spends releasing a cancelled connect attempt
        self.release_delay = 0.0
        self.links: Dict[str, FakeLink] = {}
        self._on_found = None
        self._on_disconnect: Dict[str, Callable[[], None]] = {}

    async def ensure_ready(self):
        if self.ready_error is not None:
            raise self.ready_error

    async def start_scan(self, on_found):
        self.log.append("start_scan")
        self.scanning = True
        self._on_found = on_found
        loop = asyncio.get_running_loop()
        for peripheral in self.advertise_on_scan:
            loop.call_soon(self.advertise, peripheral)

    def advertise(self, peripheral: DiscoveredPeripheral) -> None:
        if self.scanning and self._on_found is not None:
            self.log.append(("found", peripheral.address))
            self._on_found(peripheral)

    async def stop_scan(self):
        self.log.append("stop_scan")
        self.scanning = False
        self._on_found = None

    async def connect(self, peripheral, timeout, on_disconnect):
        self.log.append(("connect", peripheral.address))
        gate = self.connect_gates.get(peripheral.address)
        if gate is not None:
            try:
                await gate.wait()
            except asyncio.CancelledError:
                if self.release_delay:
                    await asyncio.sleep(self.release_delay)
                self.log.append(("connect_cancelled", peripheral.address))
                raise
        if self.connect_error is not None:
            raise self.connect_error
        link = FakeLink(peripheral.address, self.log, **self.link_options.get(peripheral.address, {}))
        self.links[peripheral.address] = link
        self._on_disconnect[peripheral.address] = on_disconnect
        return link

    def connected_link(self, address, on_disconnect):
        link = self.links.get(address)
        if link is None or not link.connected:
            return None
        self.log.append(("reuse", address))
        self._on_disconnect[address] = on_disconnect
        return link

    def adopt(self, address: str, on_disconnect=lambda: None) -> FakeLink:
        """Pretend a link to ``address`` is already up."""
        link = FakeLink(address, self.log, **self.link_options.get(address, {}))
        self.links[address] = link
        self._on_disconnect[address] = on_disconnect
        return link

    def drop(self, address: str) -> None:
        """Simulate the peripheral going away."""
        self.links[address].connected = False
        self._on_disconnect[address]()


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def peripheral(address: str, name: Optional[str] = None, rssi: int = -60) -> DiscoveredPeripheral:
    return DiscoveredPeripheral(address=address, name=name, rssi=rssi)


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_radio() -> FakeRadio:
    return FakeRadio()


@pytest.fixture
def settings() -> MonitorSettings:
    return MonitorSettings(scan_timeout_s=0.2, connect_timeout_s=0.2)


@pytest.fixture
def profile() -> ScaleProfile:
    return ScaleProfile(
        name="test",
        service_uuid="FFE0",
        characteristic_uuid="FFE1",
        identity=PeripheralIdentity(name="ESP32_Scale_BT"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
