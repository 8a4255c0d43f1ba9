# FILE: config.py
"""
config.py — Configuration loading for the roomchat server.

Loads (in priority order):
  1. CLI flags
  2. JSON config file (--config PATH or roomchat_config.json in cwd)
  3. Hard-coded defaults

JSON keys mirror the dict returned by load_config(); any of them may be
omitted.
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Any

DEFAULT_PORT        = 5000
DEFAULT_HOST        = "0.0.0.0"
DEFAULT_ROOM        = "General"
DEFAULT_ROOMS       = ("General", "Science", "Gaming", "Music", "Movies")
DEFAULT_LOG_DIR     = "server_logs"
DEFAULT_FILES_DIR   = "shared_files"
DEFAULT_VOICES_DIR  = "voice_messages"
MAX_TRANSFER_SIZE   = 10 * 1024 * 1024   # files and voice clips share the cap
DEFAULT_LOG_LEVEL   = "INFO"
DEFAULT_CONFIG_FILE = "roomchat_config.json"

logger = logging.getLogger("roomchat.config")


def _load_json_config(path: str | None) -> dict:
    """Load JSON config from *path* (or the default config file if it exists)."""
    candidates = []
    if path:
        candidates.append(path)
    candidates.append(DEFAULT_CONFIG_FILE)

    for c in candidates:
        p = Path(c).expanduser()
        if p.exists():
            try:
                return json.loads(p.read_text())
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Ignoring unreadable config file %s: %s", p, exc)
    return {}


def build_arg_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    p = argparse.ArgumentParser(
        prog="roomchat",
        description="roomchat — multi-room text chat server with file and voice sharing",
    )

    p.add_argument("--host",       default=None, metavar="HOST",
                   help=f"Interface to bind (default {DEFAULT_HOST}).")
    p.add_argument("--port",       type=int, default=None, metavar="PORT",
                   help=f"TCP port (default {DEFAULT_PORT}).")
    p.add_argument("--log-dir",    default=None, metavar="PATH",
                   help=f"Directory for room logs (default {DEFAULT_LOG_DIR}).")
    p.add_argument("--files-dir",  default=None, metavar="PATH",
                   help=f"Directory for shared files (default {DEFAULT_FILES_DIR}).")
    p.add_argument("--voices-dir", default=None, metavar="PATH",
                   help=f"Directory for voice messages (default {DEFAULT_VOICES_DIR}).")
    p.add_argument("--log-level",  default=None, metavar="LEVEL",
                   choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   help=f"Server log verbosity (default {DEFAULT_LOG_LEVEL}).")
    p.add_argument("--config",     default=None, metavar="PATH",
                   help="JSON config file path.")

    return p


def load_config(argv: list[str] | None = None) -> dict[str, Any]:
    """
    Parse CLI args and merge with JSON config file.

    Returns a plain dict with all resolved settings.
    """
    parser = build_arg_parser()
    args   = parser.parse_args(argv)
    jcfg   = _load_json_config(args.config)

    def _get(key_cli, key_json=None, default=None):
        cli_val = getattr(args, key_cli.replace("-", "_"), None)
        if cli_val is not None:
            return cli_val
        if key_json and key_json in jcfg:
            return jcfg[key_json]
        return default

    cfg: dict[str, Any] = {
        # Network
        "host":       _get("host",       "host",       DEFAULT_HOST),
        "port":       _get("port",       "port",       DEFAULT_PORT),

        # Storage
        "log_dir":    _get("log_dir",    "log_dir",    DEFAULT_LOG_DIR),
        "files_dir":  _get("files_dir",  "files_dir",  DEFAULT_FILES_DIR),
        "voices_dir": _get("voices_dir", "voices_dir", DEFAULT_VOICES_DIR),

        # Chat (JSON only)
        "rooms":        list(jcfg.get("rooms", DEFAULT_ROOMS)),
        "default_room": jcfg.get("default_room", DEFAULT_ROOM),
        "max_transfer_size": int(jcfg.get("max_transfer_size", MAX_TRANSFER_SIZE)),

        # Diagnostics
        "log_level":  str(_get("log_level", "log_level", DEFAULT_LOG_LEVEL)).upper(),
    }

    return cfg


def default_config(**overrides: Any) -> dict[str, Any]:
    """Defaults without touching argv or the filesystem; handy for embedding."""
    cfg: dict[str, Any] = {
        "host":              DEFAULT_HOST,
        "port":              DEFAULT_PORT,
        "log_dir":           DEFAULT_LOG_DIR,
        "files_dir":         DEFAULT_FILES_DIR,
        "voices_dir":        DEFAULT_VOICES_DIR,
        "rooms":             list(DEFAULT_ROOMS),
        "default_room":      DEFAULT_ROOM,
        "max_transfer_size": MAX_TRANSFER_SIZE,
        "log_level":         DEFAULT_LOG_LEVEL,
    }
    cfg.update(overrides)
    return cfg
