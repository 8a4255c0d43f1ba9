# FILE: rooms.py
"""
rooms.py — Rooms, their append-only logs, and the process-wide registry.

A Room holds the set of sessions currently in it.  Membership is mutated
from many session threads at once, so every delivery works on a snapshot
taken under the room lock and the actual sends happen outside it (sends
only enqueue on the member's connection and never block).

Two delivery flavours, deliberately kept apart:
    broadcast(line, sender)   chat traffic; the sender gets its own echo
                              separately from the session
    broadcast_to_all(line)    join/leave notices; the acting user included

Rooms are never destroyed while the server runs, even when empty.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from config import DEFAULT_ROOM, DEFAULT_ROOMS
from errors import Conflict, NotFound
from utils import format_join_line, format_leave_line, format_log_time, safe_name

logger = logging.getLogger("roomchat.rooms")


def _log_filename(room_name: str) -> str:
    stamp = datetime.now().strftime("%Y%m%d")
    return f"{safe_name(room_name)}_{stamp}.log"


class RoomLog:
    """Append-only line sink for one room, open for the room's lifetime."""

    def __init__(self, room_name: str, log_dir: str | Path):
        self.room_name = room_name
        self.path = Path(log_dir) / _log_filename(room_name)
        self._lock = threading.Lock()
        self._fh = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open log for room '%s': %s", room_name, exc)
            return
        self.write(f"--- Room '{room_name}' created/opened at {format_log_time()} ---")

    def write(self, line: str) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._fh.write(line + "\n")
                self._fh.flush()
            except OSError as exc:
                logger.warning("Log write for room '%s' failed: %s", self.room_name, exc)

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._fh.write(f"--- Room '{self.room_name}' closed at {format_log_time()} ---\n")
                self._fh.close()
            except OSError as exc:
                logger.warning("Closing log for room '%s' failed: %s", self.room_name, exc)
            self._fh = None


class Room:
    """A named broadcast group."""

    def __init__(self, name: str, log: Optional[RoomLog] = None):
        self.name = name
        self.log  = log
        self._members: set = set()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Room({self.name!r}, members={self.member_count()})"

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_member(self, session) -> None:
        with self._lock:
            self._members.add(session)
        self.broadcast_to_all(format_join_line(session.username))

    def remove_member(self, session) -> bool:
        """Drop *session*; the leave notice goes out only if it was a member."""
        with self._lock:
            if session not in self._members:
                return False
            self._members.discard(session)
        self.broadcast_to_all(format_leave_line(session.username))
        return True

    def has_member(self, session) -> bool:
        with self._lock:
            return session in self._members

    def member_count(self) -> int:
        with self._lock:
            return len(self._members)

    def member_names(self) -> list[str]:
        with self._lock:
            return sorted(s.username for s in self._members)

    def _snapshot(self, exclude=None) -> list:
        with self._lock:
            return [s for s in self._members if s is not exclude]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def broadcast(self, message: str, sender) -> None:
        """Send to every member except *sender*, then log."""
        for member in self._snapshot(exclude=sender):
            member.send(message)
        self.log_message(message)

    def broadcast_to_all(self, message: str) -> None:
        for member in self._snapshot():
            member.send(message)
        self.log_message(message)

    def log_message(self, message: str) -> None:
        if self.log is not None:
            self.log.write(message)

    def close(self) -> None:
        if self.log is not None:
            self.log.close()


class RoomRegistry:
    """
    Process-wide room name → Room mapping.

    ``create`` checks and inserts under one lock, so two sessions racing on
    the same name cannot both succeed.
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        room_names: Iterable[str] = DEFAULT_ROOMS,
        default_room: str = DEFAULT_ROOM,
    ):
        self.log_dir = log_dir
        self.default_room_name = default_room
        self._rooms: dict[str, Room] = {}
        self._lock = threading.Lock()

        for name in (*room_names, default_room):
            if name not in self._rooms:
                self._rooms[name] = self._open_room(name)

    def _open_room(self, name: str) -> Room:
        log = RoomLog(name, self.log_dir) if self.log_dir is not None else None
        return Room(name, log)

    def create(self, name: str) -> Room:
        with self._lock:
            if name in self._rooms:
                raise Conflict(f"Room {name} already exists.")
            room = self._open_room(name)
            self._rooms[name] = room
        logger.info("New room created: %s", name)
        return room

    def get(self, name: str) -> Optional[Room]:
        with self._lock:
            return self._rooms.get(name)

    def require(self, name: str) -> Room:
        room = self.get(name)
        if room is None:
            raise NotFound(f"Room {name} does not exist.")
        return room

    def default(self) -> Room:
        return self.require(self.default_room_name)

    def rooms(self) -> list[Room]:
        with self._lock:
            return list(self._rooms.values())

    def names(self) -> list[str]:
        with self._lock:
            return list(self._rooms)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._rooms

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def close_all(self) -> None:
        for room in self.rooms():
            room.close()
