"""
roomchat - multi-room terminal chat server

Main entry point: resolves configuration, sets up logging and runs the
server until interrupted.
"""

from __future__ import annotations

import logging
import sys

from config import load_config
from server import run_server


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> None:
    config = load_config(argv)
    configure_logging(config["log_level"])

    try:
        run_server(config)
    except OSError as e:
        print(f"Cannot start server on {config['host']}:{config['port']}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
