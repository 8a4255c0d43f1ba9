# FILE: errors.py
"""
errors.py — Exception taxonomy for the roomchat server.

None of these are fatal to the process.  Only Disconnected ends a session;
the rest are turned into a reply line and the session carries on.
"""


class ChatError(Exception):
    """Base class for every error the server reports to a client."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ProtocolViolation(ChatError):
    """Malformed or out-of-order line, e.g. a non-numeric size field."""


class CapacityExceeded(ChatError):
    """Announced payload is larger than the transfer limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class NotFound(ChatError):
    """Room, user or artifact lookup miss."""


class Conflict(ChatError):
    """Duplicate username or room name."""


class Disconnected(ChatError):
    """End of stream or I/O failure on the connection."""
