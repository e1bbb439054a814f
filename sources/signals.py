# signals.py
"""
Tiny typed observer. One ``Signal`` instance per event kind replaces a
dictionary of listeners keyed by event name.

>>> on_shock: Signal[ShockEvent] = Signal("shock")
>>> on_shock.connect(print)
>>> on_shock.emit(event)
"""

from typing import Callable, Generic, List, TypeVar

from app_logger import logger

T = TypeVar("T")


class Signal(Generic[T]):
    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def connect(self, listener: Callable[[T], None]) -> Callable[[T], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)
        return listener

    def disconnect(self, listener: Callable[[T], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, value: T) -> None:
        # a failing listener must not starve the others
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("listener %r of signal '%s' failed", listener, self.name)

    def __len__(self) -> int:
        return len(self._listeners)
