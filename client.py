# FILE: client.py
"""
client.py — Programmatic roomchat client.

Speaks the same line/binary protocol as the server and is what the test
suite and selftest.py drive.  It is not an interactive front end: there is
no input loop, callers send lines and wait for the ones they care about.

A background receive thread is the only reader of the socket.  Plain lines
go to an inbox queue; when the server announces a download (SENDING_FILE /
SENDING_VOICE) the thread reads the metadata lines and the raw payload
itself and queues a single ``Received`` item instead.

Typical use:

    with ChatClient("127.0.0.1", 5000) as c:
        c.login("alice")
        c.send_line("hello room")
        c.expect("alice@General: hello room")
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from config import MAX_TRANSFER_SIZE
from errors import CapacityExceeded, Disconnected, NotFound
from framing import FramedConnection
from protocol import (
    ERROR_PREFIX,
    FILE_TRANSFER_CANCELLED,
    READY_TO_RECEIVE_FILE,
    READY_TO_RECEIVE_VOICE,
    SENDING_FILE,
    SENDING_VOICE,
    USERNAME_PROMPT,
    VOICE_TRANSFER_CANCELLED,
)

logger = logging.getLogger("roomchat.client")

DEFAULT_TIMEOUT = 5.0

_EOF = object()


@dataclass
class Received:
    """A payload pushed by the server in answer to /getfile or /getvoice."""

    kind: str                  # "file" | "voice"
    data: bytes
    name: Optional[str] = None  # original file name; voice clips have none
    announced_size: int = 0

    @property
    def complete(self) -> bool:
        return len(self.data) == self.announced_size


class ChatClient:
    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = DEFAULT_TIMEOUT,
        max_transfer_size: int = MAX_TRANSFER_SIZE,
    ):
        self.host     = host
        self.port     = port
        self.timeout  = timeout
        self.max_transfer_size = max_transfer_size
        self.username: str = ""

        self.conn: Optional[FramedConnection] = None
        self.transcript: list[str] = []      # every line taken from the inbox
        self._inbox: queue.Queue = queue.Queue()
        self._eof = False
        self._recv_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """Open TCP socket to the server. Returns True on success."""
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            logger.warning("Cannot connect to %s:%s — %s", self.host, self.port, e)
            return False
        sock.settimeout(None)
        self.conn = FramedConnection(sock, name=f"server {self.host}:{self.port}")
        self._recv_thread = threading.Thread(target=self._recv_loop, daemon=True)
        self._recv_thread.start()
        return True

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
        if self._recv_thread is not None:
            self._recv_thread.join(self.timeout)

    def __enter__(self) -> "ChatClient":
        if self.conn is None and not self.connect():
            raise Disconnected(f"cannot connect to {self.host}:{self.port}")
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def login(self, username: str) -> bool:
        """Answer the username prompt; True once the server lists the rooms."""
        self.expect(USERNAME_PROMPT)
        self.send_line(username)
        while True:
            line = self.next_line()
            if line is None or line in ("Invalid username", "Username already exists"):
                return False
            if line == "Available rooms:":
                self.username = username
                return True

    # ------------------------------------------------------------------
    # Receive side
    # ------------------------------------------------------------------

    def _recv_loop(self) -> None:
        try:
            while True:
                line = self.conn.read_line()
                if line is None:
                    break
                if line == SENDING_FILE:
                    name = self._required_line()
                    self._inbox.put(self._read_payload("file", name))
                elif line == SENDING_VOICE:
                    self._inbox.put(self._read_payload("voice", None))
                else:
                    self._inbox.put(line)
        except Disconnected as exc:
            logger.debug("Receive loop ended: %s", exc)
        except ValueError as exc:
            logger.warning("Malformed download header from server: %s", exc)
        finally:
            self._inbox.put(_EOF)

    def _required_line(self) -> str:
        line = self.conn.read_line()
        if line is None:
            raise Disconnected("server closed the connection mid-download")
        return line

    def _read_payload(self, kind: str, name: Optional[str]) -> Received:
        size = int(self._required_line())
        with self.conn.binary_mode():
            data = self.conn.read_exactly(size)
        return Received(kind=kind, data=data, name=name, announced_size=size)

    def _next_item(self, timeout: Optional[float]) -> Union[str, Received, None]:
        if self._eof:
            return None
        try:
            item = self._inbox.get(timeout=self.timeout if timeout is None else timeout)
        except queue.Empty:
            raise TimeoutError("no data from server in time") from None
        if item is _EOF:
            self._eof = True
            return None
        if isinstance(item, str):
            self.transcript.append(item)
        return item

    def next_line(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next text line, or None once the server has closed the connection."""
        while True:
            item = self._next_item(timeout)
            if item is None or isinstance(item, str):
                return item
            logger.debug("Dropping unexpected %s payload", item.kind)

    def expect(self, needle: str, timeout: Optional[float] = None) -> str:
        """Read lines until one contains *needle*; return that line."""
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"never saw {needle!r}")
            line = self.next_line(timeout=remaining)
            if line is None:
                raise Disconnected(f"connection closed while waiting for {needle!r}")
            if needle in line:
                return line

    def wait_for(self, needle: str, timeout: Optional[float] = None) -> bool:
        try:
            self.expect(needle, timeout)
            return True
        except (TimeoutError, Disconnected):
            return False

    def drain(self, quiet: float = 0.3) -> list[str]:
        """Collect lines until the server has been quiet for *quiet* seconds."""
        lines = []
        while True:
            try:
                line = self.next_line(timeout=quiet)
            except TimeoutError:
                return lines
            if line is None:
                return lines
            lines.append(line)

    @property
    def closed_by_server(self) -> bool:
        return self._eof

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_line(self, text: str) -> bool:
        if self.conn is None:
            raise Disconnected("not connected")
        return self.conn.write_line(text)

    def command(self, text: str, until: str, timeout: Optional[float] = None) -> str:
        """Send *text* and wait for a line containing *until*."""
        self.send_line(text)
        return self.expect(until, timeout)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _check_size(self, size: int) -> None:
        if size > self.max_transfer_size:
            raise CapacityExceeded(size, self.max_transfer_size)

    def upload_file(self, name: str, data: bytes) -> str:
        """Share *data* as *name*; returns the server's final reply line."""
        self._check_size(len(data))
        self.send_line("/sendfile")
        self.expect(READY_TO_RECEIVE_FILE)
        self.conn.write_block([name, str(len(data)), bytes(data)])
        return self._await_upload_result("File uploaded successfully")

    def upload_path(self, path: Union[str, Path]) -> str:
        p = Path(path).expanduser()
        return self.upload_file(p.name, p.read_bytes())

    def cancel_file_upload(self) -> None:
        """Start /sendfile and back out before announcing a size."""
        self.send_line("/sendfile")
        self.expect(READY_TO_RECEIVE_FILE)
        self.send_line(FILE_TRANSFER_CANCELLED)

    def upload_voice(self, data: bytes, duration_ms: int) -> str:
        self._check_size(len(data))
        self.send_line("/sendvoice")
        self.expect(READY_TO_RECEIVE_VOICE)
        self.conn.write_block([str(duration_ms), str(len(data)), bytes(data)])
        return self._await_upload_result("Voice message uploaded successfully")

    def cancel_voice_upload(self) -> None:
        self.send_line("/sendvoice")
        self.expect(READY_TO_RECEIVE_VOICE)
        self.send_line(VOICE_TRANSFER_CANCELLED)

    def _await_upload_result(self, success: str, timeout: Optional[float] = None) -> str:
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("upload result never arrived")
            line = self.next_line(timeout=remaining)
            if line is None:
                raise Disconnected("connection closed during upload")
            if line.startswith(success) or line.startswith(ERROR_PREFIX):
                return line

    def _await_download(self, timeout: Optional[float] = None) -> Received:
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("download never arrived")
            item = self._next_item(remaining)
            if item is None:
                raise Disconnected("connection closed during download")
            if isinstance(item, Received):
                return item
            if item.startswith(ERROR_PREFIX):
                raise NotFound(item)

    def download_file(self, file_id: str, timeout: Optional[float] = None) -> Received:
        self.send_line(f"/getfile {file_id}")
        return self._await_download(timeout)

    def download_voice(self, voice_id: str, timeout: Optional[float] = None) -> Received:
        self.send_line(f"/getvoice {voice_id}")
        return self._await_download(timeout)
