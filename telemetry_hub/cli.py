"""Command-line interface for telemetry-hub."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import MQTTConnectionError
from .app import TelemetryHubApp
from .config import load_config
from .logging import configure_logging
from .simulator import run_simulator

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="telemetry-hub",
        description="Realtime device telemetry hub (MQTT ingest and websocket fan-out)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the telemetry hub service")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    simulate_parser = subparsers.add_parser(
        "simulate", help="Publish simulated device telemetry to the broker"
    )
    simulate_parser.add_argument(
        "--devices", type=int, default=3, help="Number of simulated devices"
    )
    simulate_parser.add_argument(
        "--interval", type=float, default=5.0, help="Seconds between samples"
    )
    simulate_parser.add_argument(
        "--count", type=int, default=None, help="Stop after this many rounds"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        TelemetryHubApp.start(config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in ("password", "jwt_secret") and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "simulate":
        if args.devices < 1 or args.interval <= 0:
            LOGGER.error("--devices must be positive and --interval greater than zero")
            return 2
        configure_logging(config.logging.level, log_network=config.logging.log_network)
        try:
            asyncio.run(
                run_simulator(
                    config.broker,
                    devices=args.devices,
                    interval=args.interval,
                    count=args.count,
                )
            )
        except MQTTConnectionError as exc:
            LOGGER.error("Simulator failed: %s", exc)
            return 1
        except KeyboardInterrupt:
            LOGGER.info("Simulator stopped")
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
