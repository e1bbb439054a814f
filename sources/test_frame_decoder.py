from datetime import datetime

import pytest

from config import FORMAT_SERIAL, FORMAT_SHELF
from errors import DecodeFailed
from frame_decoder import (FrameDecoder, classify_presence, extract_location,
                           extract_presence, extract_weight, infer_presence)
from models import Presence
from payload_helper import PayloadHelper

AT = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
def decoder() -> FrameDecoder:
    return FrameDecoder(FORMAT_SERIAL)


def test_decodes_labelled_weight_and_presence(decoder):
    reading = decoder.decode(b"Weight: 75.00 g, Object: Object Detected", AT)
    assert reading.weight == 75.0
    assert reading.presence == Presence.PRESENT
    assert reading.presence_inferred is False
    assert reading.captured_at == AT
    assert reading.location is None


def test_no_object_label_is_absent(decoder):
    reading = decoder.decode(b"Weight: 342.50 g, Object: No Object", AT)
    assert reading.weight == 342.5
    assert reading.presence == Presence.ABSENT


def test_short_label_infers_absent_for_zero(decoder):
    reading = decoder.decode(b"W:0.00", AT)
    assert reading.weight == 0.0
    assert reading.presence == Presence.ABSENT
    assert reading.presence_inferred is True


def test_inference_boundary():
    assert infer_presence(0.09) == Presence.ABSENT
    assert infer_presence(-0.09) == Presence.ABSENT
    assert infer_presence(0.1) == Presence.PRESENT
    assert infer_presence(12.0) == Presence.PRESENT


@pytest.mark.parametrize("payload, weight", [
    (b"weight=120.4g", 120.4),
    (b"WEIGHT : 12", 12.0),
    (b"w = 3.5", 3.5),
    (b"Reading 0.35kg", 0.35),
    (b"250 grams on the plate", 250.0),
    (b"  42.5  ", 42.5),
    (b"Weight: 1.5e2 g", 150.0),
    (b"Weight: -12.5 g", -12.5),
])
def test_weight_spellings(decoder, payload, weight):
    assert decoder.decode(payload, AT).weight == pytest.approx(weight)


def test_control_characters_are_dropped(decoder):
    reading = decoder.decode(b"\x00\x02Wei\x07ght: 75.00 g\r\n", AT)
    assert reading.weight == 75.0


def test_presence_on_a_later_line(decoder):
    reading = decoder.decode(b"Weight: 10.0 g\r\nStatus: No Object\r\n", AT)
    assert reading.presence == Presence.ABSENT
    assert reading.presence_inferred is False


def test_rssi_is_not_a_weight(decoder):
    with pytest.raises(DecodeFailed) as info:
        decoder.decode(b"RSSI: -67 dBm", AT)
    assert info.value.payload == "RSSI: -67 dBm"


def test_temperature_is_not_a_weight(decoder):
    with pytest.raises(DecodeFailed):
        decoder.decode(b"Temp: 21.5 C, Battery: 87%", AT)


def test_non_finite_weight_falls_through(decoder):
    reading = decoder.decode(b"Weight: nan, W: 12.5", AT)
    assert reading.weight == 12.5


def test_only_non_finite_weight_fails(decoder):
    with pytest.raises(DecodeFailed):
        decoder.decode(b"Weight: inf", AT)


def test_failure_payload_is_truncated():
    decoder = FrameDecoder(FORMAT_SERIAL, helper=PayloadHelper(max_len=10))
    with pytest.raises(DecodeFailed) as info:
        decoder.decode(b"no numbers in this frame at all", AT)
    assert len(info.value.payload) == 10
    assert info.value.payload.endswith("…")


def test_decode_is_deterministic(decoder):
    payload = b"Weight: 75.00 g, Object: Object Detected"
    assert decoder.decode(payload, AT) == decoder.decode(payload, AT)


def test_shelf_format_extracts_location():
    decoder = FrameDecoder(FORMAT_SHELF)
    reading = decoder.decode(b"Shelf: Shelf2, Weight: 120.0 g, Object: Object Detected", AT)
    assert reading.location == "Shelf2"
    assert reading.weight == 120.0
    assert reading.presence == Presence.PRESENT


def test_shelf_format_requires_shelf_label():
    decoder = FrameDecoder(FORMAT_SHELF)
    with pytest.raises(DecodeFailed, match="shelf"):
        decoder.decode(b"Weight: 120.0 g", AT)


def test_shelf_format_ignores_unlabelled_numbers():
    decoder = FrameDecoder(FORMAT_SHELF)
    with pytest.raises(DecodeFailed, match="weight"):
        decoder.decode(b"Shelf: A1\n120 g", AT)


def test_unknown_format_is_rejected():
    with pytest.raises(ValueError):
        FrameDecoder("binary")


@pytest.mark.parametrize("value, presence", [
    ("Object Detected", Presence.PRESENT),
    ("present", Presence.PRESENT),
    ("1", Presence.PRESENT),
    ("No Object", Presence.ABSENT),
    ("not detected", Presence.ABSENT),
    ("0", Presence.ABSENT),
    ("maybe", Presence.UNKNOWN),
])
def test_classify_presence(value, presence):
    assert classify_presence(value) == presence


def test_extract_helpers():
    assert extract_weight("nothing here") is None
    assert extract_weight("Weight: 5 g") == (5.0, "weight-label")
    assert extract_weight("5 g") == (5.0, "unit-suffix")
    assert extract_presence("Weight: 5 g") is None
    assert extract_presence("Obj=yes") == Presence.PRESENT
    assert extract_presence("presence 0") == Presence.ABSENT
    assert extract_location("loc=aisle-3 weight=2") == "aisle-3"


def test_clean_normalises_line_endings():
    assert PayloadHelper.clean(b"\x00a \r\nb\rc\xff ") == "a\nb\nc"
    assert PayloadHelper.to_hex_string(b"\x01\xab") == "01:ab"
