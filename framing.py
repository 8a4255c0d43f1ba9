# FILE: framing.py
"""
framing.py — Mixed text/binary framing over a single TCP stream.

Wire protocol:
    text    newline-delimited UTF-8 lines
    binary  raw bytes; the byte count is always announced beforehand on the
            text channel, there is no length prefix of its own

Both modes read from ONE buffered reader, so bytes that arrived together
with the last text line are not lost when the caller switches to binary.
The mode flag is explicit: the caller enters binary mode with
``binary_mode()`` after the protocol handshake line and text reads are
refused until it leaves again.

Outbound traffic goes through a per-connection queue drained by its own
writer thread.  Anyone may enqueue (the owning session, or another session
broadcasting into a room) without ever blocking on a slow peer.  A
download is enqueued as one block so no broadcast line can land inside a
binary payload.

The queue is bounded.  A peer that stops reading while traffic keeps
coming is dropped once MAX_PENDING items are waiting: the socket is shut
down, so its session sees end of stream and cleans up as usual.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Union

from errors import Disconnected, ProtocolViolation

logger = logging.getLogger("roomchat.framing")

CHUNK_SIZE = 8192
MAX_PENDING = 1024     # queued outbound items per connection

_STOP = object()

BlockPart = Union[str, bytes]


def _peer_name(sock: socket.socket) -> str:
    try:
        host, port = sock.getpeername()[:2]
        return f"{host}:{port}"
    except (OSError, ValueError, TypeError):
        return "?"


class FramedConnection:
    """One duplex stream: text lines and announced-length binary payloads."""

    def __init__(self, sock: socket.socket, name: str = "", max_pending: int = MAX_PENDING):
        self.sock   = sock
        self.name   = name or _peer_name(sock)
        self.alive  = True
        self._reader = sock.makefile("rb")
        self._binary = False
        self._closed = False
        self._close_lock = threading.Lock()
        self._outbox: queue.Queue = queue.Queue(maxsize=max_pending)
        self._writer = threading.Thread(
            target=self._write_loop,
            name=f"writer-{self.name}",
            daemon=True,
        )
        self._writer.start()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def in_binary_mode(self) -> bool:
        return self._binary

    @contextmanager
    def binary_mode(self) -> Iterator["FramedConnection"]:
        """Switch the read side to raw bytes for the duration of the block."""
        if self._binary:
            raise ProtocolViolation("connection is already in binary mode")
        self._binary = True
        try:
            yield self
        finally:
            self._binary = False

    def read_line(self) -> Optional[str]:
        """Return the next line without its terminator, or None at end of stream."""
        if self._binary:
            raise ProtocolViolation("text read attempted in binary mode")
        try:
            raw = self._reader.readline()
        except (OSError, ValueError) as exc:
            raise Disconnected(f"read from {self.name} failed: {exc}") from exc
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def iter_exactly(self, n: int, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """
        Yield chunks until *n* bytes have been read or the stream ends.

        A premature end of stream simply stops the iteration; the caller
        compares the total against *n* to detect a truncated transfer.
        """
        if not self._binary:
            raise ProtocolViolation("binary read attempted in text mode")
        remaining = n
        while remaining > 0:
            try:
                chunk = self._reader.read1(min(chunk_size, remaining))
            except (OSError, ValueError) as exc:
                raise Disconnected(f"read from {self.name} failed: {exc}") from exc
            if not chunk:
                return
            remaining -= len(chunk)
            yield chunk

    def read_exactly(self, n: int) -> bytes:
        """Read exactly *n* bytes; fewer only if the stream ended first."""
        return b"".join(self.iter_exactly(n))

    # ------------------------------------------------------------------
    # Writing (queued)
    # ------------------------------------------------------------------

    def write_line(self, text: str) -> bool:
        return self._enqueue((text + "\n").encode("utf-8"))

    def write_block(self, parts: Iterable[BlockPart]) -> bool:
        """
        Enqueue a sequence written without interleaving.

        ``str`` parts are sent as lines, ``bytes`` parts verbatim.  *parts*
        may be a generator; it is consumed on the writer thread.
        """
        return self._enqueue(parts)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until everything queued so far has been handed to the socket."""
        if self._closed or not self._writer.is_alive():
            return self._outbox.empty()
        marker = threading.Event()
        try:
            self._outbox.put(marker, timeout=timeout)
        except queue.Full:
            return False
        return marker.wait(timeout)

    def _enqueue(self, item) -> bool:
        if self._closed or not self.alive:
            return False
        try:
            self._outbox.put_nowait(item)
        except queue.Full:
            logger.warning("Outbound queue for %s is full, dropping the connection", self.name)
            self._mark_dead()
            return False
        return True

    def _write_loop(self) -> None:
        while True:
            item = self._outbox.get()
            if item is _STOP:
                return
            if isinstance(item, threading.Event):
                item.set()
                continue
            if not self.alive:
                continue
            try:
                self._send_item(item)
            except OSError as exc:
                logger.warning("Write to %s failed: %s", self.name, exc)
                self._mark_dead()
            except Exception:
                logger.exception("Unexpected error writing to %s", self.name)
                self._mark_dead()

    def _send_item(self, item) -> None:
        if isinstance(item, bytes):
            self.sock.sendall(item)
            return
        for part in item:
            if isinstance(part, str):
                part = (part + "\n").encode("utf-8")
            self.sock.sendall(part)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _mark_dead(self) -> None:
        """Writer failed: make the reading side see end of stream."""
        self.alive = False
        self.abort()

    def abort(self) -> None:
        """Shut the socket down without waiting; blocked reads return EOF."""
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self, timeout: float = 5.0) -> None:
        """Drain queued output, stop the writer and close the socket.  Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._outbox.put_nowait(_STOP)
        except queue.Full:
            self._mark_dead()
            self._outbox.put(_STOP)
        if threading.current_thread() is not self._writer:
            self._writer.join(timeout)
        self.alive = False
        self.abort()
        try:
            self._reader.close()
        except (OSError, ValueError):
            pass
        try:
            self.sock.close()
        except OSError:
            pass
