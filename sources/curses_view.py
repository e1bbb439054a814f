# curses_view.py
"""
Curses‑based view showing the scale: link status, latest reading,
low‑stock flag, recent shocks and, while scanning or after a failed
scan, the nearby devices. The view never blocks the event loop – it runs
in its own thread and only reads what the controller pushes to it.
"""

import curses
from typing import Callable, List, Optional

from app_logger import log_buffer   # shared in‑memory log deque
from models import (ConnectionState, DecodeFailure, DiscoveredPeripheral,
                    ShockEvent, TelemetryState)


class CursesView:
    """
    Minimal curses UI. The controller wires ``on_scan_requested`` and
    ``on_disconnect_requested``; the view calls them on 's' / 'd'.
    """

    def __init__(self, stdscr: "curses.window") -> None:
        self.stdscr = stdscr
        self.status: ConnectionState = ConnectionState.IDLE
        self.message: str = ""
        self.telemetry: Optional[TelemetryState] = None
        self.shocks: List[ShockEvent] = []
        self.devices: List[DiscoveredPeripheral] = []
        self.failure: Optional[DecodeFailure] = None
        self.mode: str = "scale"          # "scale" or "log"
        self.log_scroll: int = 0
        self.running = True
        self._needs_redraw = True

        self.on_scan_requested: Optional[Callable[[], None]] = None
        self.on_disconnect_requested: Optional[Callable[[], None]] = None
        self.on_quit_requested: Optional[Callable[[], None]] = None
        self._init_curses()

    def _init_curses(self) -> None:
        curses.curs_set(0)
        self.stdscr.nodelay(True)
        curses.start_color()
        curses.use_default_colors()
        curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)
        curses.init_pair(2, curses.COLOR_RED, -1)
        curses.init_pair(3, curses.COLOR_GREEN, -1)
        self.header_attr = curses.color_pair(1) | curses.A_BOLD
        self.alert_attr = curses.color_pair(2) | curses.A_BOLD
        self.ok_attr = curses.color_pair(3)

    # ------------------------------------------------------------------
    # Public API – called by the controller side
    # ------------------------------------------------------------------
    def set_status(self, status: ConnectionState) -> None:
        self.status = status
        if status == ConnectionState.SCANNING:
            self.devices = []
        self._needs_redraw = True

    def set_message(self, message: str) -> None:
        self.message = message
        self._needs_redraw = True

    def update_telemetry(self, state: TelemetryState) -> None:
        self.telemetry = state
        self._needs_redraw = True

    def add_shock(self, event: ShockEvent) -> None:
        self.shocks = [event] + self.shocks[:9]
        self._needs_redraw = True

    def set_shocks(self, events: List[ShockEvent]) -> None:
        self.shocks = list(events)
        self._needs_redraw = True

    def add_device(self, device: DiscoveredPeripheral) -> None:
        self.devices = [d for d in self.devices if d.address != device.address] + [device]
        self._needs_redraw = True

    def set_devices(self, devices: List[DiscoveredPeripheral]) -> None:
        self.devices = list(devices)
        self._needs_redraw = True

    def show_decode_failure(self, failure: DecodeFailure) -> None:
        self.failure = failure
        self._needs_redraw = True

    def refresh(self) -> None:
        self._needs_redraw = True

    def run(self) -> None:
        """Poll keys and redraw only when needed, until quit."""
        while self.running:
            self._handle_key()
            if self._needs_redraw:
                self._needs_redraw = False
                self._render()
            curses.napms(20)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    def _handle_key(self) -> None:
        """
        * `s` → scan and connect       * `d` → disconnect
        * `l` → log view               * `m` → scale view
        * `q` → quit                   * arrows / PgUp / PgDn scroll the log
        """
        try:
            ch = self.stdscr.getch()
        except curses.error:
            ch = -1
        if ch == -1:
            return

        if ch in (ord('s'), ord('S')) and self.on_scan_requested:
            self.on_scan_requested()
        elif ch in (ord('d'), ord('D')) and self.on_disconnect_requested:
            self.on_disconnect_requested()
        elif ch in (ord('q'), ord('Q')):
            self.running = False
            if self.on_quit_requested:
                self.on_quit_requested()
        elif ch in (ord('l'), ord('L')):
            self.mode = "log"
            self.log_scroll = 0
        elif ch in (ord('m'), ord('M')):
            self.mode = "scale"
        elif self.mode == "log":
            max_y, _ = self.stdscr.getmaxyx()
            visible_lines = max_y - 2
            last = max(0, len(log_buffer) - visible_lines)
            if ch in (curses.KEY_DOWN, ord('j')):
                self.log_scroll = min(self.log_scroll + 1, last)
            elif ch in (curses.KEY_UP, ord('k')):
                self.log_scroll = max(self.log_scroll - 1, 0)
            elif ch == curses.KEY_NPAGE:
                self.log_scroll = min(self.log_scroll + visible_lines, last)
            elif ch == curses.KEY_PPAGE:
                self.log_scroll = max(self.log_scroll - visible_lines, 0)
        self._needs_redraw = True

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _put(self, y: int, x: int, text: str, attr: int = 0) -> None:
        max_y, max_x = self.stdscr.getmaxyx()
        if 0 <= y < max_y - 1 and x < max_x:
            self.stdscr.addstr(y, x, text[: max_x - x - 1], attr)

    def _render(self) -> None:
        self.stdscr.erase()
        if self.mode == "scale":
            self._draw_scale()
        else:
            self._draw_log()
        self._draw_footer()
        self.stdscr.refresh()

    def _draw_scale(self) -> None:
        _, max_x = self.stdscr.getmaxyx()
        connected = self.status == ConnectionState.SUBSCRIBED
        self._put(0, 0, f" Status: {self.status.value} ".ljust(max_x - 1), self.header_attr)
        if self.message:
            self._put(1, 0, self.message)
        row = 3

        state = self.telemetry
        if state is not None and state.latest is not None:
            latest = state.latest
            live = "live" if state.monitoring else "no data"
            self._put(row, 0, f"Weight:   {latest.weight:.2f} g  ({live})")
            presence = latest.presence.value + (" (inferred)" if latest.presence_inferred else "")
            self._put(row + 1, 0, f"Object:   {presence}")
            if state.low_stock:
                self._put(row + 2, 0, "LOW STOCK", self.alert_attr)
            else:
                self._put(row + 2, 0, "stock ok", self.ok_attr)
            if state.last_update is not None:
                self._put(row + 3, 0, f"Updated:  {state.last_update:%H:%M:%S}")
            self._put(row + 4, 0, f"Raw:      {state.last_raw_payload!r}")
            row += 6
            if len(state.shelves) > 1:
                self._put(row, 0, "Shelves", self.header_attr)
                for shelf in state.shelves.values():
                    row += 1
                    flag = "LOW STOCK" if shelf.low_stock else "ok"
                    self._put(row, 0, f"{shelf.location:<10} {shelf.latest.weight:8.2f} g  "
                                      f"{shelf.latest.presence.value:<8} {flag}",
                              self.alert_attr if shelf.low_stock else 0)
                row += 2
        elif connected:
            self._put(row, 0, "Waiting for data...")
            row += 2

        if self.failure is not None and state is not None and state.consecutive_failures > 1:
            self._put(row, 0, f"Undecodable frames: {self.failure.payload!r}", self.alert_attr)
            row += 2

        if self.shocks:
            self._put(row, 0, "Recent shocks", self.header_attr)
            for event in self.shocks:
                row += 1
                self._put(row, 0, f"{event.timestamp:%H:%M:%S}  {event.location:<10} "
                                  f"{event.weight:8.2f}  Δ{event.delta:.2f}", self.alert_attr)
            row += 2

        if self.devices and not connected:
            self._put(row, 0, "Nearby devices", self.header_attr)
            for device in self.devices:
                row += 1
                rssi = "?" if device.rssi is None else device.rssi
                note = "  (not connectable)" if device.connectable is False else ""
                self._put(row, 0, f"{device.display_name:<24} {device.address:<20} {rssi} dBm{note}")

    def _draw_log(self) -> None:
        max_y, max_x = self.stdscr.getmaxyx()
        visible_lines = max_y - 2
        logs = list(log_buffer)
        for idx, line in enumerate(logs[self.log_scroll: self.log_scroll + visible_lines]):
            self._put(idx, 0, line)

    def _draw_footer(self) -> None:
        max_y, max_x = self.stdscr.getmaxyx()
        mode_msg = f"[{self.mode.upper()}] "
        hint = "s scan · d disconnect · l logs · m scale · q quit"
        self.stdscr.addstr(max_y - 1, 0, (mode_msg + hint)[: max_x - 1], curses.A_REVERSE)
