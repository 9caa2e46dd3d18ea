"""Command line entry point serving the cam-recorder API."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

import uvicorn

from .app import DEFAULT_CONFIG_PATH, create_app
from .config import ConfigManager


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the server CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m cam_recorder",
        description="Record RTSP cameras into rotating segments and serve them over HTTP.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the JSON configuration file (default: %(default)s).",
    )
    parser.add_argument("--host", help="Override the configured bind address.")
    parser.add_argument("--port", type=int, help="Override the configured port.")
    return parser


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = ConfigManager(args.config).get_config()
    except RuntimeError as exc:
        print(f"cam-recorder: {exc}", file=sys.stderr)
        return 2

    level = config.logging.level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = args.host or config.server.host
    port = args.port or config.server.port
    uvicorn.run(create_app(args.config), host=host, port=port, log_level=config.logging.level)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``python -m cam_recorder``."""

    return run(argv)


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
