#!/usr/bin/env python3
"""Entry point for RouterSync."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

# Ensure src/ is on sys.path for local imports when running as a script
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routersync.core.config import ConfigLoadError, DeclaredState, load_state  # noqa: E402
from routersync.core.logging import setup_logging  # noqa: E402
from routersync.mikrotik.scheduler import DeviceScheduler  # noqa: E402

JOIN_POLL_SECONDS = 1.0


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        description=(
            "Keep MikroTik users, groups and scheduler entries in sync with the declared "
            "state and collect backup artifacts from every device, forever."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=ROOT_DIR / "config" / "main.yml",
        help="Path to main.yml holding the global params",
    )
    parser.add_argument(
        "--local-config",
        type=Path,
        default=ROOT_DIR / "config" / "local.yml",
        help="Path to local.yml holding the logging section",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging. Overrides local.yml logging.level.",
    )
    return parser


def start_schedulers(
    state: DeclaredState, logger: logging.Logger, stop_event: threading.Event
) -> list[threading.Thread]:
    """Start one daemon thread per device and return them."""

    threads: list[threading.Thread] = []
    for device in state.devices:
        scheduler = DeviceScheduler(device, state, logger, stop_event=stop_event)
        thread = threading.Thread(target=scheduler.run_forever, name=f"device-{device.name}", daemon=True)
        thread.start()
        threads.append(thread)
    return threads


def main(argv: list[str] | None = None) -> int:
    """Run the agent until SIGINT/SIGTERM."""

    args = build_parser().parse_args(argv)
    logger = setup_logging(args.local_config, cli_level=logging.DEBUG if args.debug else None)
    logger.info("RouterSync started.")

    try:
        state = load_state(args.config, logger)
    except ConfigLoadError:
        logger.exception("Failed to load declared state.", extra={"device": "-"})
        return 1

    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("signal=%s received, stopping schedulers", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    logger.info("Starting schedulers for %d device(s).", len(state.devices))
    threads = start_schedulers(state, logger, stop_event)

    # Poll so the main thread stays responsive to signals.
    while any(thread.is_alive() for thread in threads):
        if stop_event.wait(JOIN_POLL_SECONDS):
            break
    for thread in threads:
        thread.join()

    logger.info("RouterSync finished.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
