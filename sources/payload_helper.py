"""payload_helper.py

Utility class grouping the small helpers that turn a raw notification
payload into printable text, and back into hex for the log file.

Typical usage
-------------
>>> from payload_helper import PayloadHelper
>>> PayloadHelper.clean(b"\\x00Weight: 12.5 g\\r\\n")
'Weight: 12.5 g'
>>> PayloadHelper.to_hex_string(b"\\x01\\xab")
'01:ab'
"""

import re
from typing import Union

# C0 controls except \t and \n, DEL and the C1 block
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_TRAILING_SPACES = re.compile(r"[ \t]+\n")


class PayloadHelper:
    """
    Helper for payload text conversion and diagnostics formatting.

    Parameters
    ----------
    max_len : int
        Length cut-off applied by :meth:`truncate` when a cleaned payload
        is surfaced to the user.
    """

    def __init__(self, max_len: int = 80):
        self.max_len = max_len

    # ------------------------------------------------------------------
    # Text conversion
    # ------------------------------------------------------------------
    @staticmethod
    def to_text(payload: Union[bytes, bytearray, memoryview, str]) -> str:
        """Decode as UTF‑8, replacing undecodable bytes instead of failing."""
        if isinstance(payload, str):
            return payload
        return bytes(payload).decode("utf-8", errors="replace")

    @classmethod
    def clean(cls, payload: Union[bytes, bytearray, memoryview, str]) -> str:
        """
        Drop non-printable control characters (line breaks survive, ``\\r\\n``
        and lone ``\\r`` become ``\\n``) and strip surrounding whitespace.
        """
        text = cls.to_text(payload).replace("\r\n", "\n").replace("\r", "\n")
        text = _CONTROL_CHARS.sub("", text).replace("\ufffd", "")
        return _TRAILING_SPACES.sub("\n", text).strip()

    def truncate(self, text: str) -> str:
        if len(text) <= self.max_len:
            return text
        return text[: self.max_len - 1] + "…"

    # ------------------------------------------------------------------
    # Hex formatting
    # ------------------------------------------------------------------
    @staticmethod
    def to_hex_string(byte_array: Union[bytes, bytearray]) -> str:
        """
        Convert a sequence of bytes to a colon‑separated hex string.

        Example
        -------
        >>> PayloadHelper.to_hex_string(b"\\x01\\xab")
        '01:ab'
        """
        return ":".join(f"{c:02x}" for c in byte_array)
