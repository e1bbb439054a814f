#!/usr/bin/env python3
"""frame_decoder.py
Tolerant decoder for the text frames streamed by the scale firmware.

The firmware prints human-readable diagnostics rather than a fixed
binary layout, and the wording drifted between revisions::

    "Weight: 342.50 g, Object: No Object"
    "W:0.00"
    "Shelf: Shelf2\\nweight=120.4g\\nPresence: 1"

Decoding is a cascade of small, ordered steps. Each step is a plain
function so it can be exercised on its own:

1. :func:`PayloadHelper.clean` drops control characters.
2. :func:`extract_weight` tries the weight patterns, most specific first;
   the first one that matches *and* parses to a finite float wins.
3. :func:`extract_presence` scans line by line for a presence label.
4. :func:`infer_presence` derives presence from the weight when no label
   was found.
5. No weight at all raises :class:`DecodeFailed` with the cleaned text.

The decoder is pure: same payload and timestamp, same reading.
"""
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Tuple, Union

from config import FORMAT_SERIAL, FORMAT_SHELF
from errors import DecodeFailed
from models import Presence, SensorReading
from payload_helper import PayloadHelper
from timing_decorator import timed

# ----------------------------------------------------------------------
# Patterns
# ----------------------------------------------------------------------
_NUMBER = (
    r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:e[-+]?\d+)?"
    r"|[-+]?(?:nan|inf(?:inity)?)"
)


@dataclass(frozen=True)
class Step:
    """One named pattern of a cascade; group 1 is the captured value."""
    name: str
    regex: "re.Pattern[str]"


def _step(name: str, pattern: str, flags: int = 0) -> Step:
    return Step(name, re.compile(pattern, re.IGNORECASE | flags))


WEIGHT_STEPS: Tuple[Step, ...] = (
    # "Weight: 12.5 g", "weight=12.5"
    _step("weight-label", rf"\bweight\s*[:=]\s*({_NUMBER})"),
    # "W:12.5", "w = 12.5"
    _step("short-label", rf"(?<![\w.])w\s*[:=]\s*({_NUMBER})"),
    # "... 12.5 g" / "0.35kg" – a number immediately followed by a weight unit
    _step("unit-suffix", rf"(?<![\w.+-])({_NUMBER})\s*(?:kg|grams?|g)\b"),
    # a line holding nothing but a number
    _step("bare-line", rf"^\s*({_NUMBER})\s*$", re.MULTILINE),
)

# The shelf firmware always labels its weight; a stray number there is noise.
LABELLED_WEIGHT_STEPS: Tuple[Step, ...] = WEIGHT_STEPS[:2]

_VALUE = r"([^,;\n]+)"
PRESENCE_STEPS: Tuple[Step, ...] = (
    _step("colon", rf"\b(?:object|status|presence)\s*:\s*{_VALUE}"),
    _step("abbreviated", rf"\b(?:obj|pres)\s*[:=]\s*{_VALUE}"),
    _step("equals", rf"\b(?:object|status|presence)\s*=\s*{_VALUE}"),
    _step("no-separator",
          r"\b(?:object|presence)\s+(detected|present|absent|missing|yes|no|none|true|false|[01])\b"),
)

LOCATION_STEP = _step("location", r"\b(?:shelf|location|loc)\s*[:=]\s*([\w-]+)")

_ABSENT_VALUES = {"no object", "not detected", "no", "none", "absent", "missing",
                  "empty", "false", "off", "0"}
_PRESENT_VALUES = {"object detected", "detected", "present", "object", "yes",
                   "true", "on", "1"}


# ----------------------------------------------------------------------
# Individual steps
# ----------------------------------------------------------------------
def extract_weight(text: str, steps: Sequence[Step] = WEIGHT_STEPS) -> Optional[Tuple[float, str]]:
    """Return ``(weight, step name)`` for the first step yielding a finite number."""
    for step in steps:
        for match in step.regex.finditer(text):
            value = float(match.group(1))
            if math.isfinite(value):
                return value, step.name
    return None


def classify_presence(value: str) -> Presence:
    value = " ".join(value.strip().lower().split())
    if value in _ABSENT_VALUES or value.startswith(("no ", "not ")):
        return Presence.ABSENT
    if value in _PRESENT_VALUES or "detected" in value or "present" in value:
        return Presence.PRESENT
    return Presence.UNKNOWN


def extract_presence(text: str, steps: Sequence[Step] = PRESENCE_STEPS) -> Optional[Presence]:
    """First label match on any line wins; ``None`` when no line carries a label."""
    for line in text.splitlines():
        for step in steps:
            match = step.regex.search(line)
            if match:
                return classify_presence(match.group(1))
    return None


def infer_presence(weight: float, epsilon: float = 0.1) -> Presence:
    return Presence.ABSENT if abs(weight) < epsilon else Presence.PRESENT


def extract_location(text: str) -> Optional[str]:
    match = LOCATION_STEP.regex.search(text)
    return match.group(1) if match else None


# ----------------------------------------------------------------------
# Decoder
# ----------------------------------------------------------------------
class FrameDecoder:
    """
    Turns a notification payload into a :class:`SensorReading`.

    Parameters
    ----------
    frame_format : str
        ``FORMAT_SERIAL`` (any weight spelling, no location) or
        ``FORMAT_SHELF`` (labelled weight, ``Shelf:`` label required).
    presence_epsilon : float
        Below this magnitude an unlabelled frame is classified absent.
    helper : PayloadHelper, optional
        Cleans and truncates payloads.
    """

    def __init__(self, frame_format: str = FORMAT_SERIAL, presence_epsilon: float = 0.1,
                 helper: Optional[PayloadHelper] = None):
        if frame_format not in (FORMAT_SERIAL, FORMAT_SHELF):
            raise ValueError(f"unknown frame format: {frame_format!r}")
        self.frame_format = frame_format
        self.presence_epsilon = presence_epsilon
        self.helper = helper or PayloadHelper()
        self.weight_steps = WEIGHT_STEPS if frame_format == FORMAT_SERIAL else LABELLED_WEIGHT_STEPS

    @timed("FrameDecoder.decode")
    def decode(self, payload: Union[bytes, bytearray, str],
               captured_at: Optional[datetime] = None) -> SensorReading:
        text = self.helper.clean(payload)

        found = extract_weight(text, self.weight_steps)
        if found is None:
            raise DecodeFailed("no weight field in frame", self.helper.truncate(text))
        weight, _ = found

        location = None
        if self.frame_format == FORMAT_SHELF:
            location = extract_location(text)
            if location is None:
                raise DecodeFailed("no shelf label in frame", self.helper.truncate(text))

        presence = extract_presence(text)
        inferred = presence is None
        if inferred:
            presence = infer_presence(weight, self.presence_epsilon)

        return SensorReading(
            weight=weight,
            presence=presence,
            captured_at=captured_at or datetime.now(),
            presence_inferred=inferred,
            location=location,
        )
