# FILE: directory.py
"""
directory.py — Process-wide username → Session mapping.

The one invariant here that really needs mutual exclusion is name
uniqueness: ``claim`` does the existence check and the insert under a
single lock acquisition.
"""

from __future__ import annotations

import threading
from typing import Optional

from errors import Conflict


class ClientDirectory:
    """Online sessions by (case-sensitive) username."""

    def __init__(self):
        self._clients: dict[str, object] = {}
        self._lock = threading.Lock()

    def claim(self, username: str, session) -> None:
        """Register *session* under *username*; Conflict if the name is taken."""
        with self._lock:
            if username in self._clients:
                raise Conflict(f"Username {username} already exists")
            self._clients[username] = session

    def release(self, username: str, session) -> bool:
        """Remove the entry, but only if it still belongs to *session*."""
        with self._lock:
            if self._clients.get(username) is not session:
                return False
            del self._clients[username]
            return True

    def get(self, username: str) -> Optional[object]:
        with self._lock:
            return self._clients.get(username)

    def usernames(self) -> list[str]:
        with self._lock:
            return sorted(self._clients)

    def __contains__(self, username: str) -> bool:
        with self._lock:
            return username in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)
