"""
Formatting helpers shared by the roomchat server and client.

Everything that ends up on the wire as a fixed template lives here so the
server and the client agree on it.
"""

from __future__ import annotations

import re
from datetime import datetime

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def format_timestamp(ts: float | None = None) -> str:
    """Format a UNIX timestamp as [HH:MM]. If ts is None, use current time."""
    dt = datetime.fromtimestamp(ts) if ts is not None else datetime.now()
    return dt.strftime("[%H:%M]")


def format_log_time(ts: float | None = None) -> str:
    """Full date and time, used in room log banners."""
    dt = datetime.fromtimestamp(ts) if ts is not None else datetime.now()
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def human_size(size: int) -> str:
    """
    Return a human-readable size string with two decimals.

    Divides while the value is strictly above 1024, so 1024 bytes stays
    "1024.00 B" and 10 MiB becomes "10.00 MB".
    """
    value = float(size)
    unit = 0
    while value > 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {_SIZE_UNITS[unit]}"


def safe_name(text: str) -> str:
    """Replace anything outside [A-Za-z0-9_.-] so *text* can go into a file name."""
    return _UNSAFE_CHARS.sub("_", text)


def format_chat_line(ts_str: str, username: str, room: str, text: str) -> str:
    """Room broadcast line: [HH:MM] user@room: text"""
    return f"{ts_str} {username}@{room}: {text}"


def format_whisper_line(ts_str: str, from_user: str, text: str) -> str:
    """Private line: [HH:MM] [PRIVATE] user whispers: text"""
    return f"{ts_str} [PRIVATE] {from_user} whispers: {text}"


def format_join_line(username: str) -> str:
    return f"{username} has joined the room"


def format_leave_line(username: str) -> str:
    return f"{username} has left the room"
