# telemetry_repository.py
"""
Higher‑level service the aggregator writes through.
It knows *what* to store, not *how* to store it, and every write is
fire‑and‑forget: a storage error is logged, never raised into the
telemetry path.
"""

import sqlite3
from typing import List

from app_logger import logger
from models import SensorReading, ShockEvent
from telemetry_db import TelemetryDB


class TelemetryRepository:
    """
    Public API used by the aggregator (or any other component) to persist data.
    """

    def __init__(self, db: TelemetryDB):
        self.db = db
        self.write_errors = 0

    def _write(self, what: str, insert, item) -> None:
        try:
            row_id = insert(item)
        except sqlite3.Error as exc:
            self.write_errors += 1
            logger.error("could not store %s: %s", what, exc)
            return
        logger.debug("stored %s #%d", what, row_id)

    # ------------------------------------------------------------------
    # TelemetrySink
    # ------------------------------------------------------------------
    def record_reading(self, reading: SensorReading) -> None:
        self._write("reading", self.db.insert_reading, reading)

    def record_shock(self, event: ShockEvent) -> None:
        self._write("shock event", self.db.insert_shock_event, event)

    def record_snapshot(self, reading: SensorReading) -> None:
        self._write("snapshot", self.db.insert_snapshot, reading)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def recent_shock_events(self, limit: int = 10) -> List[ShockEvent]:
        """Newest first; an unreadable store yields an empty list."""
        try:
            return self.db.recent_shock_events(limit)
        except sqlite3.Error as exc:
            logger.error("could not load shock events: %s", exc)
            return []
