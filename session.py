# FILE: session.py
"""
session.py — Server-side state for one connected client.

States:
    CONNECTING → AUTHENTICATING → ROOMED ⇄ ROOMLESS → DISCONNECTED

One thread runs ``Session.run`` for the whole life of the connection, so
every read on the connection and every command handler for this client is
strictly sequential.  Other sessions only ever touch this one through
``send`` (which enqueues) and by reading ``username`` / ``current_room``.

Transfers switch the connection's read side to binary mode for exactly
the announced byte count:

    /sendfile   → READY_TO_RECEIVE_FILE   ← name, size, <size bytes>
    /getfile id → SENDING_FILE, name, size, <size bytes>, completion line
    /sendvoice  → READY_TO_RECEIVE_VOICE  ← duration ms, size, <size bytes>
    /getvoice id→ SENDING_VOICE, size, <size bytes>, completion line

Oversized uploads are refused before a single payload byte is read.  Any
other refusal once the size line is in (bad name, bad duration, storage
error) still reads and drops the announced payload, so the stream is back
on a line boundary before the next command.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Iterable, Iterator, Optional

import utils
from directory import ClientDirectory
from errors import CapacityExceeded, Conflict, Disconnected, NotFound, ProtocolViolation
from framing import FramedConnection
from protocol import (
    FILE_TRANSFER_CANCELLED,
    HELP_LINES,
    PROGRESS_STEP,
    READY_TO_RECEIVE_FILE,
    READY_TO_RECEIVE_VOICE,
    SENDING_FILE,
    SENDING_VOICE,
    USERNAME_PROMPT,
    VOICE_TRANSFER_CANCELLED,
)
from rooms import Room, RoomRegistry
from transfers import Artifact, TransferStore, Upload

logger = logging.getLogger("roomchat.session")


class SessionState(enum.Enum):
    CONNECTING     = "connecting"
    AUTHENTICATING = "authenticating"
    ROOMED         = "roomed"
    ROOMLESS       = "roomless"
    DISCONNECTED   = "disconnected"


def _parse_count(text: str, what: str) -> int:
    """Non-negative decimal integer from a metadata line."""
    value = text.strip()
    if not (value.isascii() and value.isdigit()):
        raise ProtocolViolation(f"Invalid {what}")
    return int(value)


class Session:
    """One client, from accept to disconnect."""

    def __init__(
        self,
        conn: FramedConnection,
        directory: ClientDirectory,
        registry: RoomRegistry,
        store: TransferStore,
        addr: Optional[tuple] = None,
    ):
        self.conn      = conn
        self.directory = directory
        self.registry  = registry
        self.store     = store
        self.addr      = addr
        self.username: str = ""
        self.current_room: Optional[Room] = None
        self.state = SessionState.CONNECTING
        self._cleanup_lock = threading.Lock()
        self._cleaned_up   = False

    def __repr__(self) -> str:
        return f"Session({self.display_name!r}, {self.state.value})"

    @property
    def display_name(self) -> str:
        return self.username or self.conn.name

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, message: str) -> bool:
        """Queue one line (or several, if *message* contains newlines)."""
        return self.conn.write_line(message)

    def _reply(self, lines: Iterable[str]) -> None:
        """Queue several lines so nothing from other sessions lands in between."""
        self.conn.write_block(list(lines))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> None:
        logger.debug("New connection from %s", self.addr)
        try:
            if not self._authenticate():
                return

            self._enter_room(self.registry.default())
            self._list_rooms()

            while True:
                line = self.conn.read_line()
                if line is None:
                    break
                self._dispatch(line)

        except Disconnected as exc:
            logger.info("Connection to %s lost: %s", self.display_name, exc)
        except Exception as exc:
            logger.exception("Unhandled error for %s: %s", self.display_name, exc)
        finally:
            self.disconnect()

    def _authenticate(self) -> bool:
        self.state = SessionState.AUTHENTICATING
        self.send(USERNAME_PROMPT)

        raw = self.conn.read_line()
        if raw is None:
            logger.debug("%s disconnected before choosing a name", self.addr)
            return False

        username = raw.strip()
        if not username:
            self.send("Invalid username")
            return False

        try:
            self.directory.claim(username, self)
        except Conflict:
            logger.info("Rejected duplicate username '%s' from %s", username, self.addr)
            self.send("Username already exists")
            return False

        self.username = username
        logger.info("%s logged in from %s", username, self.addr)
        return True

    def disconnect(self) -> None:
        """Leave everything behind and close the connection.  Runs once."""
        with self._cleanup_lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True

        if self.username:
            self.directory.release(self.username, self)

        room, self.current_room = self.current_room, None
        if room is not None:
            room.remove_member(self)

        self.state = SessionState.DISCONNECTED
        self.conn.close()
        logger.info("%s disconnected", self.display_name)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, message: str) -> None:
        """Route one line; anything that is not a command is chat."""
        message = message.strip()
        if not message:
            return

        parts = message.split(None, 1)
        cmd   = parts[0]
        arg   = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "/join":
            self._cmd_join(arg)
        elif cmd == "/create":
            self._cmd_create(arg)
        elif cmd == "/rooms" and not arg:
            self._list_rooms()
        elif cmd == "/exit" and not arg:
            self._cmd_exit()
        elif cmd == "/members" and not arg:
            self._cmd_members()
        elif cmd == "/help" and not arg:
            self._reply(HELP_LINES)
        elif cmd == "/whisper":
            self._cmd_whisper(message)
        elif cmd == "/sendfile" and not arg:
            self._guarded(self._receive_file, "Error receiving file")
        elif cmd == "/getfile":
            if arg:
                self._send_file(arg)
            else:
                self.send("Please specify a file name. Usage: /getfile FileName")
        elif cmd == "/listfiles" and not arg:
            self._list_files()
        elif cmd == "/sendvoice" and not arg:
            self._guarded(self._receive_voice, "Error receiving voice message")
        elif cmd == "/getvoice":
            if arg:
                self._send_voice(arg)
            else:
                self.send("Please specify a voice message ID. Usage: /getvoice VoiceID")
        elif cmd == "/listvoices" and not arg:
            self._list_voices()
        else:
            self._broadcast_message(message)

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def _enter_room(self, room: Room) -> None:
        if self.current_room is not None:
            self.current_room.remove_member(self)
        self.current_room = room
        room.add_member(self)
        self.state = SessionState.ROOMED

    def _list_rooms(self) -> None:
        lines = ["Available rooms:"]
        for room in self.registry.rooms():
            lines.append(f"{room.name} ({room.member_count()} members)")
        self._reply(lines)

    def _cmd_join(self, room_name: str) -> None:
        if not room_name:
            self.send("Please specify a room name. Usage: /join RoomName")
            return
        try:
            room = self.registry.require(room_name)
        except NotFound:
            self.send(f"Room {room_name} does not exist. Use /create to make a new room.")
            return
        self._enter_room(room)
        self.send(f"Joined room: {room_name}")
        logger.debug("%s joined room '%s'", self.username, room_name)

    def _cmd_create(self, room_name: str) -> None:
        if not room_name:
            self.send("Please specify a room name. Usage: /create RoomName")
            return
        try:
            self.registry.create(room_name)
        except Conflict:
            self.send(f"Room {room_name} already exists.")
            return
        self.send(f"Room {room_name} created successfully.")

    def _cmd_exit(self) -> None:
        if self.current_room is None:
            self.send("You are not in a room.")
            return
        room, self.current_room = self.current_room, None
        room.remove_member(self)
        self.state = SessionState.ROOMLESS
        self.send("You have left the room.")
        self._list_rooms()

    def _cmd_members(self) -> None:
        room = self.current_room
        if room is None:
            self.send("You are not in a room.")
            return
        self._reply([f"Members in {room.name}:"] + [f"- {n}" for n in room.member_names()])

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _broadcast_message(self, text: str) -> None:
        room = self.current_room
        if room is None:
            self.send("You are not in a room. Use /join to enter a room.")
            return
        line = utils.format_chat_line(utils.format_timestamp(), self.username, room.name, text)
        room.broadcast(line, self)
        self.send(line)

    def _cmd_whisper(self, message: str) -> None:
        parts = message.split(None, 2)
        if len(parts) < 3:
            self.send("Usage: /whisper [Username] [Message]")
            return
        target_name, text = parts[1], parts[2]

        target = self.directory.get(target_name)
        if target is None:
            self.send(f"User {target_name} not found.")
            return

        line = utils.format_whisper_line(utils.format_timestamp(), self.username, text)
        target.send(line)
        if target is not self:
            self.send(line)

        own_room, their_room = self.current_room, target.current_room
        if own_room is not None:
            own_room.log_message(f"{line} (to: {target_name})")
        if their_room is not None and their_room is not own_room:
            their_room.log_message(f"{line} (from: {self.username})")

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def _guarded(self, handler, error_prefix: str) -> None:
        """Run a transfer handler; storage failures are reported, not fatal."""
        try:
            handler()
        except OSError as exc:
            logger.warning("%s for %s: %s", error_prefix, self.display_name, exc)
            self.send(f"{error_prefix}: {exc}")

    def _read_metadata_line(self) -> str:
        line = self.conn.read_line()
        if line is None:
            raise Disconnected("stream ended during transfer setup")
        return line

    def _pump_payload(self, upload: Upload, label: str) -> None:
        """
        Copy the announced number of raw bytes into *upload*, reporting progress.

        A storage error does not stop the read: the rest of the payload is
        consumed and dropped, then the error is raised with the stream back
        on a line boundary.
        """
        reported = consumed = 0
        failure: Optional[OSError] = None
        with self.conn.binary_mode():
            for chunk in self.conn.iter_exactly(upload.expected_size):
                consumed += len(chunk)
                if failure is not None:
                    continue
                try:
                    upload.write(chunk)
                except OSError as exc:
                    failure = exc
                    continue
                percent = upload.received * 100 // upload.expected_size
                if percent >= reported + PROGRESS_STEP:
                    reported = percent
                    self.send(f"{label}: {percent}% completed")
        if consumed < upload.expected_size:
            raise Disconnected(
                f"{label.lower()} from {self.display_name} truncated at "
                f"{consumed} of {upload.expected_size} bytes"
            )
        if failure is not None:
            raise failure

    def _skip_payload(self, size: int) -> None:
        """Read and drop a payload whose header was refused."""
        consumed = 0
        with self.conn.binary_mode():
            for chunk in self.conn.iter_exactly(size):
                consumed += len(chunk)
        if consumed < size:
            raise Disconnected(f"refused upload from {self.display_name} truncated")

    def _receive_file(self) -> None:
        self.send(READY_TO_RECEIVE_FILE)

        filename = self._read_metadata_line()
        if filename.strip() == FILE_TRANSFER_CANCELLED:
            logger.debug("%s cancelled a file upload", self.username)
            return
        size_line = self._read_metadata_line()

        size: Optional[int] = None
        try:
            size = _parse_count(size_line, "file size")
            upload = self.store.file_upload(filename, size)
        except CapacityExceeded as exc:
            logger.info("Refused file from %s: %s", self.username, exc)
            self.send(f"ERROR: File too large. Maximum size is {self.store.max_size_label}")
            return
        except ProtocolViolation as exc:
            logger.warning("Bad file upload header from %s: %s", self.username, exc)
            if size is not None:
                self._skip_payload(size)
            self.send(f"ERROR: {exc.message}")
            return
        except OSError:
            self._skip_payload(size)
            raise

        with upload:
            self._pump_payload(upload, "File upload")
            artifact = upload.commit()

        name = artifact.original_name
        self.send(f"File uploaded successfully as: {name}")

        room = self.current_room
        if room is not None:
            room.broadcast(
                f"{self.username} shared a file: {name} ({artifact.size_label})\n"
                f"Use /getfile {artifact.artifact_id} to download",
                self,
            )

    def _receive_voice(self) -> None:
        self.send(READY_TO_RECEIVE_VOICE)

        duration_line = self._read_metadata_line()
        if duration_line.strip() == VOICE_TRANSFER_CANCELLED:
            logger.debug("%s cancelled a voice upload", self.username)
            return
        size_line = self._read_metadata_line()

        size: Optional[int] = None
        try:
            parsed = _parse_count(size_line, "voice message size")
            self.store.check_size(parsed)
            size = parsed
            duration_ms = _parse_count(duration_line, "voice message duration")
            upload = self.store.voice_upload(self.username, duration_ms, size)
        except CapacityExceeded as exc:
            logger.info("Refused voice message from %s: %s", self.username, exc)
            self.send(
                f"ERROR: Voice message too large. Maximum size is {self.store.max_size_label}"
            )
            return
        except ProtocolViolation as exc:
            logger.warning("Bad voice upload header from %s: %s", self.username, exc)
            if size is not None:
                self._skip_payload(size)
            self.send(f"ERROR: {exc.message}")
            return
        except OSError:
            self._skip_payload(size)
            raise

        with upload:
            self._pump_payload(upload, "Voice upload")
            artifact = upload.commit()

        seconds = duration_ms // 1000
        self.send(f"Voice message uploaded successfully (Duration: {seconds} seconds)")

        room = self.current_room
        if room is not None:
            room.broadcast(
                f"{self.username} shared a voice message (Duration: {seconds} seconds)\n"
                f"Use /getvoice {artifact.artifact_id} to listen",
                self,
            )

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def _download(self, header: list[str], artifact: Artifact, trailer: str) -> None:
        def parts() -> Iterator:
            yield from header
            yield from self.store.read_chunks(artifact)
            yield trailer

        self.conn.write_block(parts())
        logger.info("%s downloading %s %s (%d bytes)",
                    self.username, artifact.kind, artifact.artifact_id, artifact.byte_length)

    def _send_file(self, file_id: str) -> None:
        try:
            artifact = self.store.find_file(file_id)
        except NotFound:
            self.send("ERROR: File not found")
            return
        name = artifact.original_name
        self._download(
            [SENDING_FILE, name, str(artifact.byte_length)],
            artifact,
            f"File download complete: {name}",
        )

    def _send_voice(self, voice_id: str) -> None:
        try:
            artifact = self.store.find_voice(voice_id)
        except NotFound:
            self.send("ERROR: Voice message not found")
            return
        self._download(
            [SENDING_VOICE, str(artifact.byte_length)],
            artifact,
            "Voice message download complete",
        )

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def _list_files(self) -> None:
        try:
            artifacts = self.store.list_files()
        except OSError as exc:
            self.send(f"Error listing files: {exc}")
            return
        lines = ["Available shared files:"]
        if artifacts:
            lines += [f"- {a.artifact_id} ({a.size_label})" for a in artifacts]
            lines.append("Use /getfile FileName to download a file")
        else:
            lines.append("No shared files available")
        self._reply(lines)

    def _list_voices(self) -> None:
        try:
            artifacts = self.store.list_voices()
        except OSError as exc:
            self.send(f"Error listing voice messages: {exc}")
            return
        lines = ["Available voice messages:"]
        if artifacts:
            lines += [f"- {a.artifact_id} ({a.size_label})" for a in artifacts]
            lines.append("Use /getvoice VoiceID to download a voice message")
        else:
            lines.append("No voice messages available")
        self._reply(lines)
