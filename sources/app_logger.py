# app_logger.py
"""
A small wrapper around the standard library `logging` module.
Every module of the scale link imports `logger` from here, so log
configuration lives in one place.
"""

import logging
from collections import deque
from typing import Deque

# ----------------------------------------------------------------------
# 1️⃣ Configure the dedicated logger once
# ----------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_FILE = "scale_link.log"

logger = logging.getLogger("ScaleLogger")
logger.setLevel(logging.DEBUG)         # handlers decide what they keep
logger.propagate = False               # keep radio chatter out of the root logger

# ----------------------------------------------------------------------
# 2️⃣ In‑memory handler – last N records for the diagnostics screen
# ----------------------------------------------------------------------
MAX_LOG_RECORDS = 200


class MemoryHandler(logging.Handler):
    """
    Keeps the newest N formatted log strings in a deque.
    The view reads `handler.buffer` at any time; DEBUG records are
    filtered out so timing noise only lands in the log file.
    """
    def __init__(self, capacity: int = MAX_LOG_RECORDS):
        super().__init__(level=logging.INFO)
        self.capacity = capacity
        self.buffer: Deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        self.buffer.append(self.format(record))


formatter = logging.Formatter(LOG_FORMAT)

memory_handler = MemoryHandler()
memory_handler.setFormatter(formatter)
logger.addHandler(memory_handler)

file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8", delay=True)
file_handler.setLevel(logging.DEBUG)
file_handler.setFormatter(formatter)
logger.addHandler(file_handler)

# Export the buffer so the view can read it without touching the handlers.
log_buffer = memory_handler.buffer


def log_debug(msg: str, *args, **kwargs) -> None:
    """Shortcut for `logger.debug(msg, *args, **kwargs)`."""
    logger.debug(msg, *args, **kwargs)
