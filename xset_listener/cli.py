"""Command-line interface for xset-listener."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .actions import ActionTable, UnsupportedPlatformError, detect_platform
from .app import BridgeApp
from .config import load_config
from .errors import EXIT_OK, exit_code_for

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Switch this host's display on and off from MQTT messages",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start listening for display commands")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    subparsers.add_parser(
        "show-actions", help="Print the display commands for this host and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        return BridgeApp.start(config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "password" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return EXIT_OK

    if args.command == "show-actions":
        platform_key = detect_platform(config.bridge.platform)
        try:
            spec = ActionTable().lookup(platform_key)
        except UnsupportedPlatformError as exc:
            print(f"{exc}; supported: {', '.join(ActionTable().supported_platforms())}")
            return exit_code_for(exc)
        print(f"platform = {platform_key}")
        print(f"on = {' '.join(spec.on_command)}")
        print(f"off = {' '.join(spec.off_command)}")
        return EXIT_OK

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
