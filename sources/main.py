#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""main.py
Executable that connects to the shelf scale over BLE, decodes its
frames and shows stock level and shocks in a curses screen.

    python main.py --profile esp32-serial
    python main.py --address AA:BB:CC:DD:EE:FF --db shelf.db
    python main.py --report            # hourly trend log, no radio
"""

import argparse
import asyncio
import curses
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

from app_logger import logger
from config import PROFILES, DEFAULT_PROFILE, AppConfig, load_config
from controller import ScaleController
from curses_view import CursesView
from errors import PeripheralNotFound, ScaleLinkError
from frame_decoder import FrameDecoder
from models import ConnectionState, PeripheralIdentity
from payload_helper import PayloadHelper
from radio import BleakRadio
from scale_connection import ScaleConnection
from telemetry_aggregator import TelemetryAggregator
from telemetry_db import TelemetryDB
from telemetry_repository import TelemetryRepository
from trend_report import format_report, hourly_summary

DB_FILE = Path("scale_telemetry.db")


def build_components(config: AppConfig, db: TelemetryDB) -> ScaleController:
    """
    Build the whole stack and return a ready‑to‑start controller.
    """
    settings = config.settings
    profile = config.profile

    # 1️⃣  Persistence – fire‑and‑forget sink
    repo = TelemetryRepository(db)

    # 2️⃣  Telemetry
    decoder = FrameDecoder(
        frame_format=profile.frame_format,
        presence_epsilon=settings.presence_epsilon,
        helper=PayloadHelper(max_len=settings.diagnostic_payload_len),
    )
    aggregator = TelemetryAggregator(settings, location=profile.location, sink=repo)
    aggregator.seed_shock_events(repo.recent_shock_events(settings.shock_history_size))

    # 3️⃣  Radio link
    connection = ScaleConnection(BleakRadio(), profile, settings)

    return ScaleController(connection, decoder, aggregator, settings)


def wire_view(controller: ScaleController, view: CursesView,
              loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> None:
    """Connect signals to the view and the view's keys back to the loop."""
    connection = controller.connection
    aggregator = controller.aggregator

    def on_status(state: ConnectionState) -> None:
        view.set_status(state)
        if state == ConnectionState.SUBSCRIBED:
            session = connection.session
            if session is not None and session.degraded:
                view.set_message("Connected, but notifications are unavailable")
            else:
                view.set_message("Connected successfully")

    def on_error(error: ScaleLinkError) -> None:
        if isinstance(error, PeripheralNotFound):
            view.set_devices(error.discovered)
            view.set_message(error.describe().splitlines()[0])
        else:
            view.set_message(f"{error.reason} – {error.remedy}")

    connection.on_status_changed.connect(on_status)
    connection.on_device_found.connect(view.add_device)
    connection.on_error.connect(on_error)
    aggregator.on_reading_updated.connect(view.update_telemetry)
    aggregator.on_monitoring_changed.connect(lambda _live: view.refresh())
    aggregator.on_shock_detected.connect(view.add_shock)
    aggregator.on_decode_failed.connect(view.show_decode_failure)
    view.set_shocks(list(aggregator.shock_events))

    # the view runs in its own thread: hop back onto the loop
    view.on_scan_requested = lambda: asyncio.run_coroutine_threadsafe(controller.start_scan(), loop)
    view.on_disconnect_requested = lambda: asyncio.run_coroutine_threadsafe(controller.disconnect(), loop)
    view.on_quit_requested = lambda: loop.call_soon_threadsafe(stop.set)


async def run(stdscr: "curses.window", config: AppConfig, db_path: Path) -> None:
    db = TelemetryDB(db_path=db_path)
    controller = build_components(config, db)
    view = CursesView(stdscr)
    stop = asyncio.Event()
    wire_view(controller, view, asyncio.get_running_loop(), stop)

    ui_thread = threading.Thread(target=view.run, daemon=True)
    ui_thread.start()
    controller.start()
    view.set_message("Press 's' to connect to the scale")
    try:
        await stop.wait()
    finally:
        view.running = False
        await controller.stop()
        db.close()


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitor a BLE shelf scale for low stock and shocks.")
    parser.add_argument(
        "-p", "--profile",
        choices=sorted(PROFILES),
        default=DEFAULT_PROFILE,
        help="Peripheral firmware profile (characteristic addressing and frame format)",
    )
    parser.add_argument("-a", "--address", help="Match the scale by address instead of name")
    parser.add_argument("-n", "--name", help="Match the scale by (part of) its advertised name")
    parser.add_argument("-c", "--config", type=Path, help="JSON file overriding profile/settings")
    parser.add_argument("-d", "--db", type=Path, default=DB_FILE,
                        help="Path to the SQLite database (e.g. ./scale_telemetry.db)")
    parser.add_argument("-r", "--report", action="store_true",
                        help="Print the hourly trend log from the database and exit")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config, args.profile)
    if args.address or args.name:
        identity = PeripheralIdentity(address=args.address, name=args.name)
        config = replace(config, profile=replace(config.profile, identity=identity))
    return config


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    config = resolve_config(args)

    if args.report:
        db = TelemetryDB(db_path=args.db)
        try:
            print(format_report(hourly_summary(db, config.settings.low_stock_threshold)))
        finally:
            db.close()
        return

    logger.info("profile %s, looking for %s", config.profile.name, config.profile.identity)
    try:
        # ``curses.wrapper`` takes care of terminal init / teardown.
        curses.wrapper(lambda stdscr: asyncio.run(run(stdscr, config, args.db)))
    except KeyboardInterrupt:
        print("\nProgram terminated by user.")


# ----------------------------------------------------------------------
# Main entry point
# ----------------------------------------------------------------------
if __name__ == "__main__":
    main()
