# controller.py
"""
Glue between the connection, the decoder and the aggregator, and the
command surface the view drives (scan, disconnect, status).

Notification payloads are handled synchronously from start to end, so
two frames never interleave their updates.
"""

import asyncio
from typing import List, Optional

from app_logger import logger
from config import MonitorSettings
from errors import DecodeFailed, ScaleLinkError, SessionCancelled
from frame_decoder import FrameDecoder
from models import ConnectionSession, ConnectionState, PeripheralIdentity, SensorReading
from payload_helper import PayloadHelper
from scale_connection import ScaleConnection
from telemetry_aggregator import TelemetryAggregator


class ScaleController:
    def __init__(self, connection: ScaleConnection, decoder: FrameDecoder,
                 aggregator: TelemetryAggregator, settings: Optional[MonitorSettings] = None):
        self.connection = connection
        self.decoder = decoder
        self.aggregator = aggregator
        self.settings = settings or MonitorSettings()
        self.helper = PayloadHelper(max_len=self.settings.diagnostic_payload_len)
        self.last_failure: Optional[ScaleLinkError] = None
        self._tasks: List[asyncio.Task] = []

        self.connection.on_payload.connect(self.handle_payload)
        self.connection.on_status_changed.connect(self._on_status_changed)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def handle_payload(self, data: bytes) -> Optional[SensorReading]:
        logger.debug("payload %s", self.helper.to_hex_string(data))
        self.aggregator.record_raw_payload(self.helper.truncate(self.helper.clean(data)))
        try:
            reading = self.decoder.decode(data)
        except DecodeFailed as exc:
            self.aggregator.record_decode_failure(exc)
            return None
        self.aggregator.ingest(reading)
        logger.debug("reading %.2f (%s)", reading.weight, reading.presence.value)
        return reading

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the liveness ticker and the link status poll."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.ensure_future(self.aggregator.run()),
            asyncio.ensure_future(self._poll_status()),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.connection.close()

    def _on_status_changed(self, state: ConnectionState) -> None:
        # a new session must not compare its first frame with the old one
        if state == ConnectionState.IDLE:
            self.aggregator.reset()

    async def _poll_status(self) -> None:
        # link drops are pushed by the radio when it can; the poll catches the rest
        while True:
            await asyncio.sleep(self.settings.status_poll_interval_s)
            self.connection.get_connection_status()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def start_scan(self, identity: Optional[PeripheralIdentity] = None) -> Optional[ConnectionSession]:
        """Scan and connect; failures are reported, not raised."""
        self.last_failure = None
        try:
            return await self.connection.start_scan(identity)
        except SessionCancelled as exc:
            logger.info("%s", exc)
        except ScaleLinkError as exc:
            self.last_failure = exc
            logger.error("%s – %s", exc.reason, exc.remedy)
        return None

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    def get_status(self) -> ConnectionState:
        return self.connection.get_connection_status()
