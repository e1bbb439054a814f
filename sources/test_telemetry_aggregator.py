import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from config import MonitorSettings
from errors import DecodeFailed
from models import Presence, SensorReading
from telemetry_aggregator import REPEATED_FAILURES, TelemetryAggregator

T0 = datetime(2026, 1, 1, 12, 0, 0)


def reading(weight, presence=Presence.ABSENT, seconds=0.0, location=None):
    return SensorReading(weight=weight, presence=presence,
                         captured_at=T0 + timedelta(seconds=seconds), location=location)


@pytest.fixture
def aggregator(clock):
    return TelemetryAggregator(MonitorSettings(), location="Shelf", clock=clock)


def test_first_reading_sets_latest_and_monitoring(aggregator):
    updates = []
    aggregator.on_reading_updated.connect(updates.append)
    assert aggregator.ingest(reading(400.0)) is None
    assert aggregator.state.latest.weight == 400.0
    assert aggregator.state.monitoring is True
    assert aggregator.state.last_update == T0
    assert updates == [aggregator.state]


def test_shock_only_above_threshold(aggregator):
    shocks = []
    aggregator.on_shock_detected.connect(shocks.append)
    aggregator.ingest(reading(100.0))
    assert aggregator.ingest(reading(100.5, seconds=1)) is None   # delta == threshold
    event = aggregator.ingest(reading(101.2, seconds=2))
    assert event is not None
    assert event.delta == pytest.approx(0.7)
    assert event.weight == 101.2
    assert event.location == "Shelf"
    assert event.timestamp == T0 + timedelta(seconds=2)
    assert shocks == [event]


def test_shock_uses_reading_location(aggregator):
    aggregator.ingest(reading(10.0, location="Shelf2"))
    event = aggregator.ingest(reading(20.0, seconds=1, location="Shelf2"))
    assert event.location == "Shelf2"


def test_gram_scale_threshold_ignores_ordinary_moves():
    aggregator = TelemetryAggregator(MonitorSettings(shock_threshold=500.0))
    aggregator.ingest(reading(320.0))
    assert aggregator.state.low_stock is True
    assert aggregator.ingest(reading(360.0, seconds=1)) is None
    assert aggregator.state.low_stock is False
    assert aggregator.ingest(reading(900.0, seconds=2)).delta == pytest.approx(540.0)


def test_present_object_overrides_low_weight(aggregator):
    aggregator.ingest(reading(75.0, Presence.PRESENT))
    assert aggregator.state.low_stock is False


def test_shock_events_newest_first_and_bounded(aggregator):
    for i in range(15):
        aggregator.ingest(reading(0.0 if i % 2 else 10.0, seconds=i))
    events = list(aggregator.shock_events)
    assert len(events) == 10
    assert events[0].timestamp == T0 + timedelta(seconds=14)
    assert events[0].timestamp > events[-1].timestamp


@pytest.mark.parametrize("weight, presence, low", [
    (349.99, Presence.ABSENT, True),
    (350.0, Presence.ABSENT, False),
    (0.0, Presence.UNKNOWN, True),
    (100.0, Presence.PRESENT, False),
])
def test_low_stock(aggregator, weight, presence, low):
    aggregator.ingest(reading(weight, presence))
    assert aggregator.state.low_stock is low


def test_jitter_is_suppressed(aggregator):
    updates = []
    aggregator.on_reading_updated.connect(updates.append)
    aggregator.ingest(reading(200.0))
    aggregator.ingest(reading(200.005, seconds=1))
    assert len(updates) == 1
    assert len(aggregator.state.history) == 1
    assert aggregator.state.latest.weight == 200.0
    assert aggregator.state.last_update == T0 + timedelta(seconds=1)


def test_presence_change_is_not_jitter(aggregator):
    aggregator.ingest(reading(200.0, Presence.ABSENT))
    aggregator.ingest(reading(200.0, Presence.PRESENT, seconds=1))
    assert aggregator.state.latest.presence == Presence.PRESENT
    assert len(aggregator.state.history) == 2


def test_history_is_bounded(aggregator):
    for i in range(25):
        aggregator.ingest(reading(float(i), seconds=i))
    history = aggregator.state.history
    assert len(history) == 10
    assert history[-1].weight == 24.0
    assert history[0].weight == 15.0


def test_decode_failure_keeps_last_reading(aggregator, clock):
    aggregator.ingest(reading(300.0))
    failures = []
    aggregator.on_decode_failed.connect(failures.append)

    for _ in range(REPEATED_FAILURES):
        aggregator.record_decode_failure(DecodeFailed("no weight field in frame", "RSSI: -67 dBm"))

    state = aggregator.state
    assert state.latest.weight == 300.0
    assert state.consecutive_failures == REPEATED_FAILURES
    assert state.decode_failures == REPEATED_FAILURES
    assert state.last_failure.payload == "RSSI: -67 dBm"
    assert state.last_failure.received_at == clock.now
    assert len(failures) == REPEATED_FAILURES

    aggregator.ingest(reading(301.0, seconds=1))
    assert state.consecutive_failures == 0
    assert state.decode_failures == REPEATED_FAILURES


def test_liveness_flips_after_window(aggregator):
    changes = []
    aggregator.on_monitoring_changed.connect(changes.append)
    aggregator.ingest(reading(100.0))
    assert aggregator.check_liveness(T0 + timedelta(seconds=2)) is True
    assert aggregator.check_liveness(T0 + timedelta(seconds=2.5)) is False
    aggregator.ingest(reading(100.0, seconds=3))
    assert aggregator.state.monitoring is True
    assert changes == [True, False, True]


def test_liveness_without_data(aggregator):
    assert aggregator.check_liveness(T0) is False


def test_snapshot_interval(aggregator):
    sink = MagicMock()
    aggregator.sink = sink
    assert aggregator.take_snapshot(T0) is None      # nothing to snapshot yet

    aggregator.ingest(reading(100.0))
    assert aggregator.take_snapshot(T0).weight == 100.0
    aggregator.ingest(reading(50.0, seconds=10))
    assert aggregator.take_snapshot(T0 + timedelta(seconds=3599)) is None
    assert aggregator.take_snapshot(T0 + timedelta(seconds=3600)).weight == 50.0
    assert [r.weight for r in aggregator.state.snapshots] == [100.0, 50.0]
    assert sink.record_snapshot.call_count == 2


def test_sink_receives_changes_and_shocks(aggregator):
    sink = MagicMock()
    aggregator.sink = sink
    aggregator.ingest(reading(100.0))
    aggregator.ingest(reading(100.001, seconds=1))
    aggregator.ingest(reading(110.0, seconds=2))
    assert sink.record_reading.call_count == 2
    sink.record_shock.assert_called_once()


def test_seeded_events_are_kept(aggregator):
    seed = TelemetryAggregator(MonitorSettings())
    seed.ingest(reading(0.0))
    seed.ingest(reading(5.0, seconds=1))
    aggregator.seed_shock_events(seed.shock_events)
    assert list(aggregator.shock_events) == list(seed.shock_events)


@pytest.mark.asyncio
async def test_run_ticks_liveness(clock):
    aggregator = TelemetryAggregator(MonitorSettings(liveness_interval_s=0.01), clock=clock)
    aggregator.ingest(reading(100.0))
    clock.now = T0 + timedelta(seconds=5)
    task = asyncio.ensure_future(aggregator.run())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert aggregator.state.monitoring is False
    assert len(aggregator.state.snapshots) == 1


def test_interleaved_shelves_are_tracked_apart(aggregator):
    shocks = []
    aggregator.on_shock_detected.connect(shocks.append)
    aggregator.ingest(reading(500.0, Presence.PRESENT, location="Shelf1"))
    aggregator.ingest(reading(100.0, Presence.ABSENT, seconds=1, location="Shelf2"))
    aggregator.ingest(reading(500.0, Presence.PRESENT, seconds=2, location="Shelf1"))

    state = aggregator.state
    assert shocks == []
    assert set(state.shelves) == {"shelf1", "shelf2"}
    assert state.shelves["shelf1"].low_stock is False
    assert state.shelves["shelf2"].low_stock is True
    assert state.shelves["shelf2"].latest.weight == 100.0
    assert state.low_stock is True

    event = aggregator.ingest(reading(520.0, Presence.PRESENT, seconds=3, location="SHELF1"))
    assert event.delta == pytest.approx(20.0)
    assert len(state.shelves) == 2
    assert state.shelves["shelf1"].latest.weight == 520.0


def test_unlabelled_frames_use_configured_location(aggregator):
    aggregator.ingest(reading(400.0))
    assert list(aggregator.state.shelves) == ["shelf"]
    assert aggregator.state.shelves["shelf"].location == "Shelf"


def test_reset_forgets_previous_weights(aggregator):
    aggregator.ingest(reading(400.0))
    aggregator.reset()
    assert aggregator.ingest(reading(0.0, seconds=1)) is None
    assert aggregator.state.latest.weight == 0.0
