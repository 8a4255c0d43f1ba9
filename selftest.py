# FILE: selftest.py
"""
selftest.py — roomchat automated acceptance test.

Starts:
  1. A local roomchat server on port 15099 (storage in a temp dir)
  2. Two clients (alice, bob)
  3. Exercises room chat, rooms, whispers and a file round-trip
  4. Asserts:
     (a) bob sees alice's room message with the [HH:MM] user@room template
     (b) alice gets her own echo
     (c) after alice moves to a new room, bob no longer sees her messages
     (d) a whisper reaches bob
     (e) an uploaded file downloads byte-identical
     (f) the server log records both logins

Run:
    python selftest.py

Expected output on success:
    [PASS] All 6 acceptance checks passed.
"""

import os
import queue as _queue
import subprocess
import sys
import tempfile
import threading as _threading
import time
from pathlib import Path

from client import ChatClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TEST_PORT = 15099
ALICE     = "alice"
BOB       = "bob"
CHAT_TEXT = "hello_room_selftest"
WHISPER   = "hello_private_selftest"

REPO_DIR = Path(__file__).parent


class _OutputReader:
    """Background thread that drains a subprocess stdout into a queue."""

    def __init__(self, proc):
        self._q: _queue.Queue = _queue.Queue()
        self._buf = ""
        t = _threading.Thread(target=self._drain, args=(proc.stdout,), daemon=True)
        t.start()

    def _drain(self, stream):
        while True:
            chunk = stream.read(256)
            if not chunk:
                break
            self._q.put(chunk.decode(errors="replace"))

    def collect(self, duration: float = 2.0) -> str:
        deadline = time.time() + duration
        while time.time() < deadline:
            try:
                self._buf += self._q.get(timeout=max(0.05, deadline - time.time()))
            except _queue.Empty:
                break
        while True:
            try:
                self._buf += self._q.get_nowait()
            except _queue.Empty:
                break
        return self._buf

    def wait_for(self, needle: str, timeout: float = 10.0) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if needle in self.collect(duration=0.2):
                return True
        return False


def _check(failures: list, ok: bool, label: str) -> None:
    if ok:
        print(f"[PASS] {label}")
    else:
        print(f"[FAIL] {label}")
        failures.append(label)


def run_tests() -> None:
    failures: list[str] = []
    tmpdir = Path(tempfile.mkdtemp(prefix="roomchat_selftest_"))

    srv_proc = subprocess.Popen(
        [
            sys.executable, "roomchat.py",
            "--host", "127.0.0.1",
            "--port", str(TEST_PORT),
            "--log-dir", str(tmpdir / "logs"),
            "--files-dir", str(tmpdir / "files"),
            "--voices-dir", str(tmpdir / "voices"),
        ],
        cwd=REPO_DIR,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        bufsize=0,
        env={**os.environ, "PYTHONUNBUFFERED": "1"},
    )
    srv_reader = _OutputReader(srv_proc)
    print("[selftest] Server started (PID %d)" % srv_proc.pid)

    alice = ChatClient("127.0.0.1", TEST_PORT)
    bob   = ChatClient("127.0.0.1", TEST_PORT)

    try:
        if not srv_reader.wait_for("Listening on", timeout=10):
            print("[FAIL] Server did not start.")
            sys.exit(1)

        for c, name in ((alice, ALICE), (bob, BOB)):
            if not c.connect() or not c.login(name):
                print(f"[FAIL] {name} could not log in.")
                sys.exit(1)

        # ---- Room chat ----
        alice.send_line(CHAT_TEXT)
        _check(failures, bob.wait_for(f"{ALICE}@General: {CHAT_TEXT}"),
               "Test 1 — Bob received alice's room message.")
        _check(failures, alice.wait_for(f"{ALICE}@General: {CHAT_TEXT}"),
               "Test 2 — Alice received her own echo.")

        # ---- Room isolation ----
        alice.command("/create Jazz", "created successfully")
        alice.command("/join Jazz", "Joined room: Jazz")
        bob.drain()
        alice.send_line("only_for_jazz")
        alice.expect("alice@Jazz: only_for_jazz")
        _check(failures, not any("only_for_jazz" in line for line in bob.drain(0.5)),
               "Test 3 — Bob did not see a message from another room.")

        # ---- Whisper ----
        alice.send_line(f"/whisper {BOB} {WHISPER}")
        _check(failures, bob.wait_for(f"[PRIVATE] {ALICE} whispers: {WHISPER}"),
               "Test 4 — Bob received the whisper.")

        # ---- File round-trip ----
        payload = b"roomchat_selftest_file_data" * 40000   # ~1 MB
        reply = alice.upload_file("selftest.bin", payload)
        file_id = None
        if reply.startswith("File uploaded successfully"):
            alice.command("/listfiles", "Use /getfile")
            listing = [l for l in alice.transcript if l.startswith("- ") and "selftest.bin" in l]
            if listing:
                file_id = listing[-1][2:].rsplit(" (", 1)[0]
        received = bob.download_file(file_id) if file_id else None
        _check(failures, received is not None and received.data == payload,
               "Test 5 — Downloaded file is byte-identical.")

        # ---- Server log ----
        log_text = srv_reader.collect(duration=0.3)
        _check(failures, f"{ALICE} logged in" in log_text and f"{BOB} logged in" in log_text,
               "Test 6 — Server log records both logins.")

    finally:
        alice.close()
        bob.close()
        srv_proc.terminate()
        try:
            srv_proc.wait(timeout=3)
        except subprocess.TimeoutExpired:
            srv_proc.kill()

    if failures:
        print(f"[FAIL] {len(failures)} check(s) failed: {', '.join(failures)}")
        sys.exit(1)
    print("[PASS] All 6 acceptance checks passed.")


if __name__ == "__main__":
    run_tests()
