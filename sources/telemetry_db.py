#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
File: telemetry_db.py
Description:
    Low‑level DAO (Data‑Access‑Object)
    A lightweight wrapper around an embedded SQLite database acting as the
    append-only document collections the scale link writes to: decoded
    readings, shock events and the hourly trend snapshots.

    Key features:
        • Automatic schema creation (reading, shock_event, snapshot tables)
        • Parameterised SQL statements (SQL‑injection safe)
        • Timestamps stored as ISO‑8601 text, enums by value
        • Helper methods such as:
            `recent_shock_events`,
            `list_readings`,
            `list_snapshots`
"""
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from models import Presence, SensorReading, ShockEvent


class TelemetryDB:
    """Append/read wrapper for the reading, shock_event and snapshot tables."""

    def __init__(self, db_path: str | Path = "scale_telemetry.db"):
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # --------------------------------------------------------------
    # Schema creation
    # --------------------------------------------------------------
    def _ensure_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS reading (
                reading_id        INTEGER PRIMARY KEY AUTOINCREMENT,
                weight            REAL    NOT NULL,
                presence          TEXT    NOT NULL,
                presence_inferred INTEGER NOT NULL DEFAULT 0,
                location          TEXT,
                captured_at       TEXT    NOT NULL
            );

            CREATE TABLE IF NOT EXISTS shock_event (
                shock_id    INTEGER PRIMARY KEY AUTOINCREMENT,
                weight      REAL    NOT NULL,
                delta       REAL    NOT NULL,
                location    TEXT    NOT NULL,
                is_shock    INTEGER NOT NULL DEFAULT 1,
                detected_at TEXT    NOT NULL
            );

            CREATE TABLE IF NOT EXISTS snapshot (
                snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                weight      REAL    NOT NULL,
                presence    TEXT    NOT NULL,
                location    TEXT,
                captured_at TEXT    NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_reading_captured_at ON reading(captured_at);
            CREATE INDEX IF NOT EXISTS idx_shock_detected_at ON shock_event(detected_at);
            """
        )
        self.conn.commit()

    # --------------------------------------------------------------
    # Helpers: Row → dataclass
    # --------------------------------------------------------------
    @staticmethod
    def _row_to_reading(row: sqlite3.Row) -> SensorReading:
        keys = row.keys()
        return SensorReading(
            weight=row["weight"],
            presence=Presence(row["presence"]),
            captured_at=datetime.fromisoformat(row["captured_at"]),
            presence_inferred=bool(row["presence_inferred"]) if "presence_inferred" in keys else False,
            location=row["location"],
        )

    @staticmethod
    def _row_to_shock(row: sqlite3.Row) -> ShockEvent:
        return ShockEvent(
            timestamp=datetime.fromisoformat(row["detected_at"]),
            weight=row["weight"],
            location=row["location"],
            delta=row["delta"],
            threshold_exceeded=bool(row["is_shock"]),
        )

    # ==============================================================
    #                     READINGS
    # ==============================================================

    def insert_reading(self, reading: SensorReading) -> int:
        cur = self.conn.cursor()
        sql = """
            INSERT INTO reading (weight, presence, presence_inferred, location, captured_at)
            VALUES (?, ?, ?, ?, ?);
        """
        cur.execute(sql, (reading.weight, reading.presence.value, int(reading.presence_inferred),
                          reading.location, reading.captured_at.isoformat()))
        self.conn.commit()
        return cur.lastrowid

    def list_readings(self, limit: Optional[int] = None) -> List[SensorReading]:
        """Oldest first; with ``limit`` only the newest ``limit`` rows."""
        if limit is None:
            cur = self.conn.execute("SELECT * FROM reading ORDER BY reading_id;")
        else:
            cur = self.conn.execute(
                "SELECT * FROM (SELECT * FROM reading ORDER BY reading_id DESC LIMIT ?)"
                " ORDER BY reading_id;",
                (limit,),
            )
        return [self._row_to_reading(r) for r in cur]

    # ==============================================================
    #                     SHOCK EVENTS
    # ==============================================================

    def insert_shock_event(self, event: ShockEvent) -> int:
        cur = self.conn.cursor()
        sql = """
            INSERT INTO shock_event (weight, delta, location, is_shock, detected_at)
            VALUES (?, ?, ?, ?, ?);
        """
        cur.execute(sql, (event.weight, event.delta, event.location,
                          int(event.threshold_exceeded), event.timestamp.isoformat()))
        self.conn.commit()
        return cur.lastrowid

    def recent_shock_events(self, limit: int = 10) -> List[ShockEvent]:
        """
        Most recent shock events, newest first.

        Parameters
        ----------
        limit : int
            Maximum number of events returned.
        """
        cur = self.conn.execute(
            "SELECT * FROM shock_event ORDER BY detected_at DESC, shock_id DESC LIMIT ?;",
            (limit,),
        )
        return [self._row_to_shock(r) for r in cur]

    # ==============================================================
    #                     SNAPSHOTS
    # ==============================================================

    def insert_snapshot(self, reading: SensorReading) -> int:
        cur = self.conn.cursor()
        cur.execute(
            "INSERT INTO snapshot (weight, presence, location, captured_at) VALUES (?, ?, ?, ?);",
            (reading.weight, reading.presence.value, reading.location, reading.captured_at.isoformat()),
        )
        self.conn.commit()
        return cur.lastrowid

    def list_snapshots(self, limit: int = 24) -> List[SensorReading]:
        cur = self.conn.execute(
            "SELECT * FROM (SELECT * FROM snapshot ORDER BY snapshot_id DESC LIMIT ?)"
            " ORDER BY snapshot_id;",
            (limit,),
        )
        return [self._row_to_reading(r) for r in cur]

    # ------------------------------------------------------------------
    # Clean shutdown
    # ------------------------------------------------------------------
    def close(self) -> None:
        self.conn.close()
