"""Command line entry point running the CamWatch daemon."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .config import ConfigError, ConfigStore
from .daemon import Daemon
from .frames import FrameSourceError
from .version import APP_VERSION

logger = logging.getLogger("cam_watch")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the daemon CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m cam_watch",
        description="CamWatch motion detection and recording daemon",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the JSON configuration (defaults to $CAMWATCH_CONFIG or config/camwatch.json).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m cam_watch` and the ``camwatch`` script."""

    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    try:
        config = ConfigStore(args.config).load()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    daemon = Daemon(config)
    try:
        daemon.start()
    except FrameSourceError as exc:
        logger.error("%s", exc)
        daemon.stop()
        return 1
    try:
        while not daemon.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted")
        daemon.request_shutdown("Interrupted")
    finally:
        daemon.stop()
    return 1 if daemon.error is not None else 0


__all__ = ["build_parser", "main"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
