# FILE: server.py
"""
server.py — roomchat TCP listener.

One daemon thread per accepted connection runs a Session to completion.
The room registry, the client directory and the transfer store are built
here once and handed to every session; nothing is a module-level global.

Wire protocol: newline-delimited UTF-8 text, with raw binary payloads of
pre-announced length during file/voice transfers (see session.py).
"""

import logging
import socket
import threading
from pathlib import Path
from typing import Any, Optional

from config import default_config
from directory import ClientDirectory
from framing import FramedConnection
from rooms import RoomRegistry
from session import Session
from transfers import TransferStore

logger = logging.getLogger("roomchat.server")


class ChatServer:
    """
    Multi-room chat server: rooms, whispers, file and voice sharing.

    ``serve_forever`` blocks; ``shutdown`` may be called from any thread.
    """

    def __init__(self, config: Optional[dict[str, Any]] = None):
        cfg = config or default_config()
        self.host = cfg["host"]
        self.port = cfg["port"]
        self.log_dir = cfg["log_dir"]

        self.store = TransferStore(
            cfg["files_dir"],
            cfg["voices_dir"],
            max_size=cfg["max_transfer_size"],
        )
        self._provision_directories()

        self.registry = RoomRegistry(
            log_dir=self.log_dir,
            room_names=cfg["rooms"],
            default_room=cfg["default_room"],
        )
        self.directory = ClientDirectory()

        self._sessions: set[Session] = set()
        self._lock = threading.Lock()
        self._server_sock: Optional[socket.socket] = None
        self._running = threading.Event()
        self._stopped = threading.Event()

    def _provision_directories(self) -> None:
        """Storage directories must exist before the first transfer."""
        self.store.ensure_directories()
        if self.log_dir is not None:
            Path(self.log_dir).mkdir(parents=True, exist_ok=True)
        logger.debug("Storage directories ready")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def address(self) -> tuple:
        """(host, port) actually bound; useful with port 0."""
        if self._server_sock is None:
            return (self.host, self.port)
        return self._server_sock.getsockname()[:2]

    def bind(self) -> tuple:
        server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_sock.bind((self.host, self.port))
        server_sock.listen(128)
        self._server_sock = server_sock
        logger.info("roomchat server listening on %s:%d", *self.address)
        return self.address

    def serve_forever(self) -> None:
        if self._server_sock is None:
            self.bind()
        self._running.set()
        try:
            while self._running.is_set():
                try:
                    sock, addr = self._server_sock.accept()
                except OSError:
                    if self._running.is_set():
                        logger.exception("accept() failed")
                    break
                t = threading.Thread(
                    target=self._handle_client,
                    args=(sock, addr),
                    name=f"session-{addr[0]}:{addr[1]}",
                    daemon=True,
                )
                t.start()
        finally:
            self._teardown()

    def run(self) -> None:
        """Bind, print the banner and serve until Ctrl+C."""
        self.bind()
        host, port = self.address
        print(f"[server] Listening on {host}:{port}")
        print(f"[server] Available rooms: {', '.join(self.registry.names())}")
        try:
            self.serve_forever()
        except KeyboardInterrupt:
            print("\n[server] Shutting down.")
            self.shutdown()

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting, drop every live session and close room logs."""
        if not self._running.is_set():
            self._teardown()
            return
        self._running.clear()
        if self._server_sock is not None:
            try:
                self._server_sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self._server_sock.close()
            except OSError:
                pass
        self._stopped.wait(timeout)

    def sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions)

    # ------------------------------------------------------------------
    # Per-client thread
    # ------------------------------------------------------------------

    def _handle_client(self, sock: socket.socket, addr: tuple) -> None:
        conn = FramedConnection(sock, name=f"{addr[0]}:{addr[1]}")
        session = Session(conn, self.directory, self.registry, self.store, addr=addr)
        with self._lock:
            self._sessions.add(session)
        try:
            session.run()
        finally:
            with self._lock:
                self._sessions.discard(session)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _teardown(self) -> None:
        if self._stopped.is_set():
            return
        self._running.clear()
        if self._server_sock is not None:
            try:
                self._server_sock.close()
            except OSError:
                pass
        for session in self.sessions():
            session.conn.abort()
        for session in self.sessions():
            session.disconnect()
        self.registry.close_all()
        self._stopped.set()
        logger.info("roomchat server stopped")


def run_server(config: dict[str, Any]) -> None:
    """Entry point used by roomchat.py."""
    ChatServer(config).run()
