# telemetry_aggregator.py
"""
Turns decoded readings into shelf-level state: low stock, shocks,
liveness and the hourly trend log.

Only this class mutates :class:`TelemetryState`. It never touches the
radio; it is fed by the controller with readings and decode failures.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, Optional, Protocol

from app_logger import logger
from config import MonitorSettings
from errors import DecodeFailed
from models import (DecodeFailure, Presence, SensorReading, ShelfStatus,
                    ShockEvent, TelemetryState)
from signals import Signal

# consecutive failures after which the raw payload is escalated to ERROR
REPEATED_FAILURES = 3


class TelemetrySink(Protocol):
    """Where readings go for safe keeping. Calls must not raise."""

    def record_reading(self, reading: SensorReading) -> None: ...

    def record_shock(self, event: ShockEvent) -> None: ...

    def record_snapshot(self, reading: SensorReading) -> None: ...


class TelemetryAggregator:
    def __init__(self, settings: Optional[MonitorSettings] = None, location: str = "Shelf",
                 sink: Optional[TelemetrySink] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.settings = settings or MonitorSettings()
        self.location = location
        self.sink = sink
        self.clock = clock

        self.state = TelemetryState(
            history_size=self.settings.history_size,
            snapshot_size=self.settings.snapshot_history_size,
        )
        # newest first
        self.shock_events: Deque[ShockEvent] = deque(maxlen=self.settings.shock_history_size)
        # shelf id (lower case) -> weight of the frame just before
        self._previous_weights: Dict[str, float] = {}
        self._last_snapshot: Optional[datetime] = None

        self.on_reading_updated: Signal[TelemetryState] = Signal("reading_updated")
        self.on_shock_detected: Signal[ShockEvent] = Signal("shock_detected")
        self.on_monitoring_changed: Signal[bool] = Signal("monitoring_changed")
        self.on_decode_failed: Signal[DecodeFailure] = Signal("decode_failed")

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    def is_low_stock(self, reading: SensorReading) -> bool:
        return (reading.weight < self.settings.low_stock_threshold
                and reading.presence != Presence.PRESENT)

    def shelf_key(self, reading: SensorReading) -> str:
        """Shelf ids compare case-insensitively; unlabelled frames use the configured location."""
        return (reading.location or self.location).lower()

    def _is_change(self, reading: SensorReading, shelf: Optional[ShelfStatus]) -> bool:
        if shelf is None or shelf.latest.presence != reading.presence:
            return True
        return abs(reading.weight - shelf.latest.weight) > self.settings.jitter_epsilon

    def _detect_shock(self, key: str, reading: SensorReading) -> Optional[ShockEvent]:
        previous = self._previous_weights.get(key)
        self._previous_weights[key] = reading.weight
        if previous is None:
            return None
        delta = abs(reading.weight - previous)
        if delta <= self.settings.shock_threshold:
            return None
        return ShockEvent(
            timestamp=reading.captured_at,
            weight=reading.weight,
            location=reading.location or self.location,
            delta=delta,
        )

    def _set_monitoring(self, monitoring: bool) -> None:
        if self.state.monitoring != monitoring:
            self.state.monitoring = monitoring
            logger.info("monitoring %s", "active" if monitoring else "stalled – no frames")
            self.on_monitoring_changed.emit(monitoring)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def ingest(self, reading: SensorReading) -> Optional[ShockEvent]:
        """
        Apply one decoded reading. Shock detection always compares with
        the frame just before from the same shelf; history and listeners
        only see readings that moved by more than the jitter epsilon.
        """
        state = self.state
        key = self.shelf_key(reading)
        shelf = state.shelves.get(key)
        shock = self._detect_shock(key, reading)
        changed = self._is_change(reading, shelf)

        state.last_update = reading.captured_at
        state.consecutive_failures = 0
        if changed:
            low_stock = self.is_low_stock(reading)
            if shelf is None:
                state.shelves[key] = ShelfStatus(reading.location or self.location, reading, low_stock)
            else:
                shelf.latest = reading
                shelf.low_stock = low_stock
            state.latest = reading
            state.history.append(reading)
            state.low_stock = any(s.low_stock for s in state.shelves.values())
        self._set_monitoring(True)

        if changed:
            if self.sink is not None:
                self.sink.record_reading(reading)
            self.on_reading_updated.emit(state)

        if shock is not None:
            self.shock_events.appendleft(shock)
            logger.warning("shock detected at %s: Δ%.2f (now %.2f)",
                           shock.location, shock.delta, shock.weight)
            if self.sink is not None:
                self.sink.record_shock(shock)
            self.on_shock_detected.emit(shock)
        return shock

    def record_raw_payload(self, text: str) -> None:
        self.state.last_raw_payload = text

    def record_decode_failure(self, error: DecodeFailed) -> DecodeFailure:
        """Keep the failure for display; the last good reading stays untouched."""
        state = self.state
        failure = DecodeFailure(payload=error.payload, reason=error.reason, received_at=self.clock())
        state.last_failure = failure
        state.decode_failures += 1
        state.consecutive_failures += 1
        if state.consecutive_failures >= REPEATED_FAILURES:
            logger.error("%d frames in a row undecodable, last: %r",
                         state.consecutive_failures, failure.payload)
        else:
            logger.warning("undecodable frame (%s): %r", failure.reason, failure.payload)
        self.on_decode_failed.emit(failure)
        return failure

    def reset(self) -> None:
        """Forget the previous weights, so the next frame starts a fresh comparison."""
        self._previous_weights.clear()

    def seed_shock_events(self, events: Iterable[ShockEvent]) -> None:
        """Preload recent events (newest first), e.g. from the repository."""
        self.shock_events.clear()
        self.shock_events.extend(events)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def check_liveness(self, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        last = self.state.last_update
        if last is None or (now - last).total_seconds() > self.settings.liveness_window_s:
            self._set_monitoring(False)
        return self.state.monitoring

    def take_snapshot(self, now: Optional[datetime] = None) -> Optional[SensorReading]:
        """Append the current reading to the trend log if the interval has elapsed."""
        now = now or self.clock()
        latest = self.state.latest
        if latest is None:
            return None
        if self._last_snapshot is not None and \
                (now - self._last_snapshot).total_seconds() < self.settings.snapshot_interval_s:
            return None
        self._last_snapshot = now
        self.state.snapshots.append(latest)
        logger.info("trend snapshot: %.2f (%s)", latest.weight, latest.presence.value)
        if self.sink is not None:
            self.sink.record_snapshot(latest)
        return latest

    async def run(self) -> None:
        """Liveness and snapshot ticks until cancelled."""
        while True:
            await asyncio.sleep(self.settings.liveness_interval_s)
            now = self.clock()
            self.check_liveness(now)
            self.take_snapshot(now)
