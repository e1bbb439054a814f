#!/usr/bin/env python3
"""scale_connection.py
Lifecycle of the single radio link to the scale.

    IDLE → PERMISSION_PENDING → SCANNING → CONNECTING → DISCOVERING
         → SUBSCRIBED → DISCONNECTING → IDLE
    any state → ERROR → IDLE on failure

At most one session is ever live: a new scan first tears the previous
session down completely. Nothing is retried automatically – every retry
is a new :meth:`ScaleConnection.start_scan` from the caller.

If notifications cannot be enabled the session is kept but marked
``degraded``; ``on_subscription_failed`` fires once for that session.
"""
import asyncio
import itertools
from typing import Awaitable, Callable, Dict, List, Optional

from app_logger import logger
from config import MonitorSettings, ScaleProfile
from errors import (ConnectionFailed, PeripheralNotFound, PermissionDenied,
                    RadioPoweredOff, ScaleLinkError, SessionCancelled,
                    SubscriptionFailed)
from models import (ConnectionSession, ConnectionState, DiscoveredPeripheral,
                    PeripheralIdentity)
from radio import RadioBackend, RadioLink
from signals import Signal
from timing_decorator import timed

PermissionGate = Callable[[], Awaitable[bool]]

_NOTIFY_PROPERTIES = {"notify", "indicate"}


async def grant_all() -> bool:
    """Desktop stacks have no runtime permission prompt."""
    return True


class ScaleConnection:
    """
    Connection state machine for one scale.

    Parameters
    ----------
    radio : RadioBackend
        Shared radio manager (``BleakRadio`` in production).
    profile : ScaleProfile
        Target identity and characteristic addressing.
    settings : MonitorSettings
        Scan and connect timeouts.
    permission_gate : async callable, optional
        Asked before every scan; returns ``True`` when granted.
    """

    def __init__(self, radio: RadioBackend, profile: ScaleProfile,
                 settings: Optional[MonitorSettings] = None,
                 permission_gate: PermissionGate = grant_all):
        self.radio = radio
        self.profile = profile
        self.settings = settings or MonitorSettings()
        self.permission_gate = permission_gate

        self.state = ConnectionState.IDLE
        self.session: Optional[ConnectionSession] = None
        self.last_error: Optional[ScaleLinkError] = None
        # address (lower case) -> latest advertisement, in discovery order
        self.discovered: Dict[str, DiscoveredPeripheral] = {}

        self._session_ids = itertools.count(1)
        self._match: Optional[asyncio.Future] = None
        self._scan_identity: Optional[PeripheralIdentity] = None
        self._scanning = False
        self._pending: Optional[asyncio.Future] = None

        self.on_status_changed: Signal[ConnectionState] = Signal("status_changed")
        self.on_device_found: Signal[DiscoveredPeripheral] = Signal("device_found")
        self.on_payload: Signal[bytes] = Signal("payload")
        self.on_error: Signal[ScaleLinkError] = Signal("error")
        self.on_subscription_failed: Signal[SubscriptionFailed] = Signal("subscription_failed")

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    def _set_state(self, session: ConnectionSession, state: ConnectionState) -> None:
        session.state = state
        if session is not self.session or self.state == state:
            return
        logger.info("session #%d: %s → %s", session.session_id, self.state.value, state.value)
        self.state = state
        self.on_status_changed.emit(state)

    def _ensure_current(self, session: ConnectionSession) -> None:
        if session.closed or session is not self.session:
            raise SessionCancelled(f"session #{session.session_id} was torn down")

    def _new_session(self, identity: PeripheralIdentity) -> ConnectionSession:
        session = ConnectionSession(identity=identity, session_id=next(self._session_ids))
        self.session = session
        return session

    async def _fail(self, session: ConnectionSession, error: ScaleLinkError) -> ScaleLinkError:
        """Release everything, go through ERROR to IDLE and hand back the error to raise."""
        await self._release(session)
        if session is self.session:
            logger.error("session #%d failed: %s", session.session_id, error)
            self.last_error = error
            self._set_state(session, ConnectionState.ERROR)
            self.on_error.emit(error)
            self._set_state(session, ConnectionState.IDLE)
            self.session = None
        return error

    async def _stop_scanning(self) -> None:
        if self._scanning:
            self._scanning = False
            await self.radio.stop_scan()

    async def _release(self, session: ConnectionSession) -> None:
        """Stop the scan, cancel a pending connect, drop the subscription and the link."""
        if session.closed:
            return
        session.closed = True
        if self._match is not None and not self._match.done():
            self._match.cancel()
        await self._stop_scanning()
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            # the radio releases the partial link while it handles the cancel
            await asyncio.gather(pending, return_exceptions=True)
        link: Optional[RadioLink] = session.link
        if link is not None:
            if session.characteristic:
                await link.stop_notify(session.characteristic)
            await link.disconnect()
        logger.info("session #%d released (%d frame(s) received)",
                    session.session_id, session.frames_received)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------
    async def request_permissions(self) -> bool:
        granted = await self.permission_gate()
        if not granted:
            logger.error("Bluetooth permissions not granted")
        return granted

    # ------------------------------------------------------------------
    # Scan → match → connect
    # ------------------------------------------------------------------
    @timed()
    async def start_scan(self, identity: Optional[PeripheralIdentity] = None,
                         timeout: Optional[float] = None) -> ConnectionSession:
        """
        Scan with an open filter and connect to the first peripheral
        matching ``identity`` (defaults to the profile's).

        Raises
        ------
        PermissionDenied, RadioPoweredOff, PeripheralNotFound, ConnectionFailed
            The state machine is back in IDLE when these surface.
        SessionCancelled
            ``disconnect()`` or a newer scan tore this attempt down.
        """
        identity = identity or self.profile.identity
        timeout = self.settings.scan_timeout_s if timeout is None else timeout

        if self.session is not None and not self.session.state.is_terminal:
            logger.info("tearing down session #%d before a new scan", self.session.session_id)
            await self.disconnect()

        session = self._new_session(identity)
        self.discovered = {}
        self._set_state(session, ConnectionState.PERMISSION_PENDING)
        granted = await self.request_permissions()
        self._ensure_current(session)
        if not granted:
            raise await self._fail(session, PermissionDenied("Bluetooth permissions not granted"))

        try:
            await self.radio.ensure_ready()
        except RadioPoweredOff as exc:
            raise await self._fail(session, exc) from exc
        self._ensure_current(session)

        loop = asyncio.get_running_loop()
        self._match = loop.create_future()
        self._scan_identity = identity
        self._set_state(session, ConnectionState.SCANNING)
        try:
            await self.radio.start_scan(self._handle_discovery)
        except ScaleLinkError as exc:
            raise await self._fail(session, exc) from exc
        self._scanning = True
        logger.info("scanning for %s (timeout %.1fs)", identity, timeout)

        try:
            peripheral = await asyncio.wait_for(self._match, timeout)
        except asyncio.TimeoutError:
            found: List[DiscoveredPeripheral] = list(self.discovered.values())
            logger.warning("scan timeout reached, %d device(s) seen", len(found))
            raise await self._fail(session, PeripheralNotFound(
                f"no peripheral matching {identity} within {timeout:.1f}s", found)) from None
        except asyncio.CancelledError:
            if session.closed:
                raise SessionCancelled(f"scan of session #{session.session_id} was cancelled") from None
            await self._release(session)
            raise

        await self._stop_scanning()
        self._ensure_current(session)
        return await self.connect(peripheral)

    def _handle_discovery(self, peripheral: DiscoveredPeripheral) -> None:
        if self._match is None or self._match.done():
            return
        self.discovered[peripheral.address.lower()] = peripheral
        self.on_device_found.emit(peripheral)
        if self._scan_identity is not None and self._scan_identity.matches(peripheral):
            logger.info("found target device %s (%s)", peripheral.display_name, peripheral.address)
            self._match.set_result(peripheral)

    @timed()
    async def connect(self, peripheral: DiscoveredPeripheral) -> ConnectionSession:
        """
        Connect, enumerate services and subscribe. Bounded by
        ``settings.connect_timeout_s``; any failure ends in ERROR → IDLE.
        """
        session = self.session
        if session is None or session.closed or session.state != ConnectionState.SCANNING:
            # direct connect without a scan: the previous session goes first
            if session is not None:
                await self.disconnect()
            session = self._new_session(PeripheralIdentity(address=peripheral.address))
        session.peripheral = peripheral
        self._set_state(session, ConnectionState.CONNECTING)

        timeout = self.settings.connect_timeout_s

        def on_disconnect() -> None:
            self._handle_link_lost(session)

        link = self.radio.connected_link(peripheral.address, on_disconnect)
        if link is not None:
            logger.info("%s is already connected, reusing the link", peripheral.address)
        else:
            pending = asyncio.ensure_future(self.radio.connect(peripheral, timeout, on_disconnect))
            self._pending = pending
            try:
                link = await asyncio.wait_for(pending, timeout)
            except asyncio.TimeoutError:
                raise await self._fail(session, ConnectionFailed(
                    f"connection to {peripheral.address} timed out after {timeout:.1f}s")) from None
            except ConnectionFailed as exc:
                raise await self._fail(session, exc) from exc
            except RadioPoweredOff as exc:
                raise await self._fail(session, exc) from exc
            except asyncio.CancelledError:
                if session.closed:
                    raise SessionCancelled(
                        f"connect of session #{session.session_id} was cancelled") from None
                await self._release(session)
                raise
            finally:
                if self._pending is pending:
                    self._pending = None

        session.link = link
        if session.closed:
            await link.disconnect()
            raise SessionCancelled(f"session #{session.session_id} was torn down while connecting")

        self._set_state(session, ConnectionState.DISCOVERING)
        try:
            services = link.describe_services()
        except ScaleLinkError as exc:
            raise await self._fail(session, ConnectionFailed(f"service discovery failed: {exc}")) from exc
        logger.info("discovered services: %s", ", ".join(services) or "none")

        await self.subscribe()
        return session

    def _find_characteristic(self, link: RadioLink) -> Optional[tuple]:
        services = link.describe_services()
        wanted = self.profile.characteristic_uuid
        props = services.get(self.profile.service_uuid, {}).get(wanted)
        if props is not None:
            return wanted, props
        # some firmware builds move the characteristic to another service
        for chars in services.values():
            if wanted in chars:
                return wanted, chars[wanted]
        return None

    async def subscribe(self) -> bool:
        """Enable notifications; ``False`` means the session is now degraded."""
        session = self.session
        if session is None or session.link is None:
            raise SubscriptionFailed("no active link to subscribe on")

        try:
            found = self._find_characteristic(session.link)
            if found is None:
                raise SubscriptionFailed(
                    f"characteristic {self.profile.characteristic_uuid} not found")
            characteristic, props = found
            if not _NOTIFY_PROPERTIES & set(props):
                raise SubscriptionFailed(f"characteristic {characteristic} does not notify")
            await session.link.start_notify(
                characteristic, lambda data: self._handle_notification(session, data))
        except SubscriptionFailed as exc:
            session.degraded = True
            logger.error("subscription failed, telemetry degraded: %s", exc)
            self._set_state(session, ConnectionState.SUBSCRIBED)
            self.on_subscription_failed.emit(exc)
            return False

        session.characteristic = characteristic
        self._set_state(session, ConnectionState.SUBSCRIBED)
        logger.info("successfully subscribed to notifications on %s", characteristic)
        return True

    # ------------------------------------------------------------------
    # Link-layer callbacks
    # ------------------------------------------------------------------
    def _handle_notification(self, session: ConnectionSession, data: bytes) -> None:
        if session.closed or session is not self.session:
            return
        session.frames_received += 1
        self.on_payload.emit(data)

    def _handle_link_lost(self, session: ConnectionSession) -> None:
        if session.closed or session is not self.session:
            return
        if session.state == ConnectionState.DISCONNECTING:
            return
        session.closed = True
        error = ConnectionFailed(f"link to {session.peripheral.address if session.peripheral else '?'} lost")
        logger.warning("session #%d: %s", session.session_id, error)
        self.last_error = error
        self._set_state(session, ConnectionState.ERROR)
        self.on_error.emit(error)
        self._set_state(session, ConnectionState.IDLE)
        self.session = None

    # ------------------------------------------------------------------
    # Teardown & status
    # ------------------------------------------------------------------
    async def disconnect(self) -> None:
        """Tear the current session down from any state. No session: no-op."""
        session = self.session
        if session is None:
            return
        logger.info("disconnecting session #%d", session.session_id)
        self._set_state(session, ConnectionState.DISCONNECTING)
        await self._release(session)
        self._set_state(session, ConnectionState.IDLE)
        if self.session is session:
            self.session = None

    def get_connection_status(self) -> ConnectionState:
        """Current state, with SUBSCRIBED double-checked against the link layer."""
        session = self.session
        if session is not None and session.state == ConnectionState.SUBSCRIBED:
            if session.link is None or not session.link.is_connected:
                self._handle_link_lost(session)
        return self.state

    def is_connected(self) -> bool:
        return self.get_connection_status() == ConnectionState.SUBSCRIBED

    async def close(self) -> None:
        await self.disconnect()
        await self.radio.close()
