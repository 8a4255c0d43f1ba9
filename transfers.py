# FILE: transfers.py
"""
transfers.py — On-disk store for shared files and voice messages.

Identifiers:
    file    <epoch_ms>_<original basename>       stored as-is in files_dir
    voice   <safe username>_<epoch_ms>           stored as <id>.wav in voices_dir

An upload is written to a hidden ``.<name>.partial`` file next to its final
location and renamed into place only after every announced byte arrived,
so listings never show half-written artifacts.  Voice ids are only as
unique as username + millisecond timestamp; two uploads by the same user
inside one millisecond would collide.

Each committed payload gets a SHA-256 digest (cryptography's hash
primitives) which is logged and carried on the returned Artifact.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from cryptography.hazmat.primitives import hashes

from config import MAX_TRANSFER_SIZE
from errors import CapacityExceeded, NotFound, ProtocolViolation
from utils import human_size, safe_name

logger = logging.getLogger("roomchat.transfers")

FILE  = "file"
VOICE = "voice"

VOICE_SUFFIX   = ".wav"
PARTIAL_SUFFIX = ".partial"
READ_CHUNK     = 8192


def _now_ms() -> int:
    return int(time.time() * 1000)


def original_name_from_id(artifact_id: str) -> str:
    """Strip the ``<epoch_ms>_`` prefix from a stored file id."""
    _, sep, rest = artifact_id.partition("_")
    return rest if sep else artifact_id


@dataclass(frozen=True)
class Artifact:
    """A stored file or voice clip."""

    artifact_id:   str
    kind:          str
    path:          Path
    byte_length:   int
    original_name: Optional[str] = None
    duration_ms:   Optional[int] = None
    sha256:        Optional[str] = None

    @property
    def size_label(self) -> str:
        return human_size(self.byte_length)


class Upload:
    """
    An in-flight upload.  Use as a context manager: anything not committed
    by the end of the block is deleted.
    """

    def __init__(
        self,
        store: "TransferStore",
        kind: str,
        artifact_id: str,
        final_path: Path,
        expected_size: int,
        original_name: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ):
        self.store         = store
        self.kind          = kind
        self.artifact_id   = artifact_id
        self.final_path    = final_path
        self.expected_size = expected_size
        self.original_name = original_name
        self.duration_ms   = duration_ms
        self.received      = 0
        self.artifact: Optional[Artifact] = None

        self._partial = final_path.with_name("." + final_path.name + PARTIAL_SUFFIX)
        self._digest  = hashes.Hash(hashes.SHA256())
        self._fh      = open(self._partial, "wb")

    def __enter__(self) -> "Upload":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.artifact is None:
            self.discard()
        return False

    @property
    def complete(self) -> bool:
        return self.received == self.expected_size

    def write(self, chunk: bytes) -> None:
        self._fh.write(chunk)
        self._digest.update(chunk)
        self.received += len(chunk)

    def commit(self) -> Artifact:
        if not self.complete:
            raise ProtocolViolation(
                f"truncated upload: got {self.received} of {self.expected_size} bytes"
            )
        self._fh.close()
        os.replace(self._partial, self.final_path)
        self.artifact = Artifact(
            artifact_id=self.artifact_id,
            kind=self.kind,
            path=self.final_path,
            byte_length=self.received,
            original_name=self.original_name,
            duration_ms=self.duration_ms,
            sha256=self._digest.finalize().hex(),
        )
        self.store._remember(self.artifact)
        logger.info(
            "Stored %s %s (%d bytes, sha256=%s)",
            self.kind, self.artifact_id, self.received, self.artifact.sha256,
        )
        return self.artifact

    def discard(self) -> None:
        try:
            self._fh.close()
        except OSError:
            pass
        try:
            self._partial.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove partial upload %s: %s", self._partial, exc)


class TransferStore:
    """Shared files and voice messages, addressed by generated ids."""

    def __init__(
        self,
        files_dir: str | Path,
        voices_dir: str | Path,
        max_size: int = MAX_TRANSFER_SIZE,
    ):
        self.files_dir  = Path(files_dir)
        self.voices_dir = Path(voices_dir)
        self.max_size   = max_size
        self._durations: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def max_size_label(self) -> str:
        return human_size(self.max_size)

    def ensure_directories(self) -> None:
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.voices_dir.mkdir(parents=True, exist_ok=True)

    def check_size(self, size: int) -> None:
        if size > self.max_size:
            raise CapacityExceeded(size, self.max_size)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def file_upload(self, filename: str, size: int) -> Upload:
        self.check_size(size)
        name = Path(filename.replace("\\", "/")).name.strip()
        if name in ("", ".", ".."):
            raise ProtocolViolation("Invalid file name")
        artifact_id = f"{_now_ms()}_{name}"
        self.files_dir.mkdir(parents=True, exist_ok=True)
        return Upload(self, FILE, artifact_id, self.files_dir / artifact_id, size,
                      original_name=name)

    def voice_upload(self, username: str, duration_ms: int, size: int) -> Upload:
        self.check_size(size)
        owner = safe_name(username).lstrip(".") or "voice"
        voice_id = f"{owner}_{_now_ms()}"
        self.voices_dir.mkdir(parents=True, exist_ok=True)
        return Upload(self, VOICE, voice_id, self.voices_dir / (voice_id + VOICE_SUFFIX),
                      size, duration_ms=duration_ms)

    def _remember(self, artifact: Artifact) -> None:
        if artifact.kind == VOICE and artifact.duration_ms is not None:
            with self._lock:
                self._durations[artifact.artifact_id] = artifact.duration_ms

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve(directory: Path, name: str) -> Optional[Path]:
        if not name or name.startswith(".") or "/" in name or "\\" in name:
            return None
        path = directory / name
        return path if path.is_file() else None

    def find_file(self, artifact_id: str) -> Artifact:
        path = self._resolve(self.files_dir, artifact_id)
        if path is None:
            raise NotFound("File not found")
        return Artifact(
            artifact_id=artifact_id,
            kind=FILE,
            path=path,
            byte_length=path.stat().st_size,
            original_name=original_name_from_id(artifact_id),
        )

    def find_voice(self, voice_id: str) -> Artifact:
        path = self._resolve(self.voices_dir, voice_id + VOICE_SUFFIX) if voice_id else None
        if path is None:
            raise NotFound("Voice message not found")
        with self._lock:
            duration = self._durations.get(voice_id)
        return Artifact(
            artifact_id=voice_id,
            kind=VOICE,
            path=path,
            byte_length=path.stat().st_size,
            duration_ms=duration,
        )

    def _scan(self, directory: Path, suffix: str = "") -> list[Path]:
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and not p.name.startswith(".") and p.name.endswith(suffix)
        )

    def list_files(self) -> list[Artifact]:
        found = []
        for p in self._scan(self.files_dir):
            try:
                found.append(self.find_file(p.name))
            except (NotFound, OSError):
                continue  # removed while listing
        return found

    def list_voices(self) -> list[Artifact]:
        found = []
        for p in self._scan(self.voices_dir, VOICE_SUFFIX):
            try:
                found.append(self.find_voice(p.name[: -len(VOICE_SUFFIX)]))
            except (NotFound, OSError):
                continue
        return found

    def read_chunks(self, artifact: Artifact, chunk_size: int = READ_CHUNK) -> Iterator[bytes]:
        """Yield at most ``byte_length`` bytes of the artifact's content."""
        remaining = artifact.byte_length
        with open(artifact.path, "rb") as fh:
            while remaining > 0:
                chunk = fh.read(min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk
        if remaining:
            raise OSError(f"{artifact.path} is shorter than announced")
