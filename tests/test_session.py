"""
End-to-end behaviour of a session against a live server on an ephemeral port.
"""

import errno
import re
import threading

import pytest

from client import ChatClient
from errors import NotFound
from protocol import HELP_LINES, READY_TO_RECEIVE_FILE, READY_TO_RECEIVE_VOICE, USERNAME_PROMPT
from transfers import Upload

from conftest import wait_until

CHAT_LINE = re.compile(r"^\[\d{2}:\d{2}\] (?P<user>\S+)@(?P<room>\S+): (?P<text>.*)$")
PROGRESS_LINE = re.compile(r"^File upload: (\d+)% completed$")
VOICE_PROGRESS_LINE = re.compile(r"^Voice upload: (\d+)% completed$")


def _count(lines, needle):
    return sum(1 for line in lines if line == needle)


class TestAuthentication:
    def test_login_joins_default_room_and_lists_rooms(self, connect):
        # given / when
        alice = connect("alice")
        lines = alice.drain()

        # then
        assert "alice has joined the room" in alice.transcript
        assert "General (1 members)" in lines
        assert "Science (0 members)" in lines

    def test_username_is_trimmed(self, connect, chat_server):
        connect("  carol  ")
        assert wait_until(lambda: "carol" in chat_server.directory)

    def test_blank_username_is_rejected(self, connect):
        client = connect()
        client.expect(USERNAME_PROMPT)
        client.send_line("   ")

        client.expect("Invalid username")
        assert client.next_line(timeout=5) is None
        assert client.closed_by_server

    def test_duplicate_username_is_rejected(self, connect, chat_server):
        connect("alice")

        second = connect()
        assert second.login("alice") is False
        assert "Username already exists" in second.transcript
        assert chat_server.directory.usernames() == ["alice"]

    def test_concurrent_logins_with_same_name_have_one_winner(self, chat_server):
        host, port = chat_server.address
        clients = [ChatClient(host, port) for _ in range(5)]
        results = []
        lock = threading.Lock()

        def attempt(client):
            assert client.connect()
            ok = client.login("dup")
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=attempt, args=(c,)) for c in clients]
        try:
            for t in threads:
                t.start()
            for t in threads:
                t.join(10)
            assert results.count(True) == 1
        finally:
            for c in clients:
                c.close()


class TestRoomChat:
    def test_message_reaches_room_and_is_echoed_once(self, connect):
        # given
        alice = connect("alice")
        bob = connect("bob")
        alice.drain()

        # when
        alice.send_line("hello room")

        # then
        line = bob.expect("hello room")
        match = CHAT_LINE.match(line)
        assert match and match.group("user") == "alice" and match.group("room") == "General"
        echo = alice.expect("hello room")
        assert echo == line
        alice.drain()
        assert sum("hello room" in l for l in alice.transcript) == 1

    def test_join_notice_goes_to_existing_members(self, connect):
        alice = connect("alice")
        alice.drain()

        connect("bob")

        assert _count(alice.drain(), "bob has joined the room") == 1

    def test_rooms_are_isolated(self, connect):
        # given: alice moves into a new room
        alice = connect("alice")
        bob = connect("bob")
        alice.command("/create Jazz", "Room Jazz created successfully.")
        alice.command("/join Jazz", "Joined room: Jazz")
        assert "alice has left the room" in bob.drain()

        # when
        alice.send_line("only jazz")
        alice.expect("alice@Jazz: only jazz")
        bob.send_line("only general")
        bob.expect("bob@General: only general")

        # then
        bob.drain()
        alice.drain()
        assert not any("only jazz" in l for l in bob.transcript)
        assert not any("only general" in l for l in alice.transcript)

    def test_blank_lines_are_ignored(self, connect):
        alice = connect("alice")
        bob = connect("bob")
        alice.drain()
        bob.drain()

        alice.send_line("   ")
        alice.send_line("/rooms")
        alice.expect("Available rooms:")

        assert bob.drain() == []

    def test_unknown_command_text_is_chat(self, connect):
        alice = connect("alice")
        alice.send_line("/rooms please")
        assert CHAT_LINE.match(alice.expect("/rooms please"))


class TestRoomCommands:
    def test_join_missing_room(self, connect):
        alice = connect("alice")
        alice.command("/join Nowhere", "Room Nowhere does not exist. Use /create to make a new room.")

    def test_bare_join_and_create_print_usage(self, connect):
        alice = connect("alice")
        alice.command("/join", "Please specify a room name. Usage: /join RoomName")
        alice.command("/create", "Please specify a room name. Usage: /create RoomName")

    def test_create_existing_room(self, connect):
        alice = connect("alice")
        alice.command("/create Science", "Room Science already exists.")

    def test_rooms_shows_member_counts(self, connect):
        alice = connect("alice")
        connect("bob")
        alice.drain()

        alice.send_line("/rooms")
        alice.expect("Available rooms:")
        lines = alice.drain()
        assert "General (2 members)" in lines
        assert "Movies (0 members)" in lines

    def test_members_lists_current_room(self, connect):
        alice = connect("alice")
        connect("bob")
        alice.drain()

        alice.send_line("/members")
        alice.expect("Members in General:")
        lines = alice.drain()
        assert lines[:2] == ["- alice", "- bob"]

    def test_exit_leaves_user_roomless(self, connect):
        # given
        alice = connect("alice")
        bob = connect("bob")

        # when
        alice.command("/exit", "You have left the room.")
        alice.expect("Available rooms:")

        # then
        assert "alice has left the room" in bob.drain()
        alice.command("hello?", "You are not in a room. Use /join to enter a room.")
        alice.command("/members", "You are not in a room.")
        alice.command("/exit", "You are not in a room.")

        alice.command("/join General", "Joined room: General")
        assert "alice has joined the room" in bob.drain()

    def test_help(self, connect):
        alice = connect("alice")
        alice.send_line("/help")
        alice.expect(HELP_LINES[0])
        assert alice.drain()[: len(HELP_LINES) - 1] == list(HELP_LINES[1:])


class TestWhisper:
    def test_whisper_reaches_target_in_another_room(self, connect):
        # given
        alice = connect("alice")
        bob = connect("bob")
        bob.command("/join Music", "Joined room: Music")
        alice.drain()

        # when
        alice.send_line("/whisper bob psst over here")

        # then
        line = bob.expect("[PRIVATE] alice whispers: psst over here")
        assert re.match(r"^\[\d{2}:\d{2}\] \[PRIVATE\] alice whispers: psst over here$", line)
        assert alice.expect("[PRIVATE] alice whispers: psst over here") == line

    def test_whisper_is_not_seen_by_bystanders(self, connect):
        alice = connect("alice")
        bob = connect("bob")
        carol = connect("carol")
        carol.drain()

        alice.send_line("/whisper bob secret")
        bob.expect("secret")

        assert not any("secret" in l for l in carol.drain())

    def test_whisper_to_self_arrives_once(self, connect):
        alice = connect("alice")
        alice.drain()

        alice.send_line("/whisper alice note to self")

        assert sum("note to self" in l for l in alice.drain()) == 1

    def test_whisper_to_unknown_user(self, connect):
        alice = connect("alice")
        alice.command("/whisper ghost boo", "User ghost not found.")

    def test_whisper_usage(self, connect):
        alice = connect("alice")
        alice.command("/whisper bob", "Usage: /whisper [Username] [Message]")

    def test_whisper_is_logged_in_both_rooms(self, connect, chat_server):
        alice = connect("alice")
        bob = connect("bob")
        bob.command("/join Music", "Joined room: Music")

        alice.send_line("/whisper bob logged")
        bob.expect("logged")

        general = chat_server.registry.require("General").log.path
        music = chat_server.registry.require("Music").log.path
        assert wait_until(
            lambda: "whispers: logged (to: bob)" in general.read_text(encoding="utf-8")
        )
        assert wait_until(
            lambda: "whispers: logged (from: alice)" in music.read_text(encoding="utf-8")
        )


class TestDisconnect:
    def test_disconnect_announces_leave_and_frees_name(self, connect, chat_server):
        # given
        alice = connect("alice")
        bob = connect("bob")
        alice.drain()

        # when
        bob.close()

        # then
        alice.expect("bob has left the room")
        assert wait_until(lambda: "bob" not in chat_server.directory)
        assert wait_until(lambda: chat_server.registry.default().member_count() == 1)
        connect("bob")


class TestFileTransfer:
    def test_round_trip(self, connect):
        # given
        alice = connect("alice")
        bob = connect("bob")
        payload = bytes(range(256)) * 4096  # 1 MiB with every byte value

        # when
        reply = alice.upload_file("blob.bin", payload)

        # then
        assert reply == "File uploaded successfully as: blob.bin"
        bob.expect("alice shared a file: blob.bin (1024.00 KB)")
        notice = bob.expect("Use /getfile ")
        file_id = notice.split()[2]
        assert file_id.endswith("_blob.bin")

        received = bob.download_file(file_id)
        assert received.name == "blob.bin"
        assert received.complete
        assert received.data == payload
        bob.expect("File download complete: blob.bin")

    def test_upload_from_disk(self, connect, tmp_path):
        alice = connect("alice")
        source = tmp_path / "report.pdf"
        source.write_bytes(b"%PDF-1.4 fake")

        assert alice.upload_path(source) == "File uploaded successfully as: report.pdf"

    def test_progress_is_reported_in_steps(self, connect):
        alice = connect("alice")
        alice.drain()

        alice.upload_file("big.bin", b"z" * 500_000)

        progress = [
            int(m.group(1))
            for m in map(PROGRESS_LINE.match, alice.transcript)
            if m
        ]
        assert progress
        assert all(b - a >= 10 for a, b in zip(progress, progress[1:]))
        assert progress[-1] <= 100

    def test_listfiles(self, connect):
        alice = connect("alice")
        alice.command("/listfiles", "Available shared files:")
        alice.expect("No shared files available")

        alice.upload_file("a.txt", b"aaa")
        alice.send_line("/listfiles")
        alice.expect("Available shared files:")
        entry = alice.next_line()
        assert re.match(r"^- \d+_a\.txt \(3\.00 B\)$", entry)
        alice.expect("Use /getfile FileName to download a file")

    def test_oversized_upload_is_refused_and_session_continues(self, connect, chat_server):
        # given
        alice = connect("alice")
        alice.send_line("/sendfile")
        alice.expect(READY_TO_RECEIVE_FILE)

        # when: announce 11 MiB but never send it
        alice.send_line("huge.bin")
        alice.send_line(str(11 * 1024 * 1024))

        # then
        alice.expect("ERROR: File too large. Maximum size is 10.00 MB")
        alice.command("/rooms", "Available rooms:")
        assert chat_server.store.list_files() == []

    def test_invalid_size_is_reported(self, connect):
        alice = connect("alice")
        alice.command("/sendfile", READY_TO_RECEIVE_FILE)
        alice.send_line("x.bin")
        alice.send_line("twelve")
        alice.expect("ERROR: Invalid file size")
        alice.command("/rooms", "Available rooms:")

    def test_cancelled_upload(self, connect, chat_server):
        alice = connect("alice")
        alice.cancel_file_upload()

        alice.command("/rooms", "Available rooms:")
        assert chat_server.store.list_files() == []

    def test_truncated_upload_is_discarded(self, connect, chat_server):
        # given
        alice = connect("alice")
        alice.command("/sendfile", READY_TO_RECEIVE_FILE)

        # when: announce 100 bytes, send 10, hang up
        alice.conn.write_block(["cut.bin", "100", b"0123456789"])
        alice.conn.flush(timeout=5)
        alice.close()

        # then
        assert wait_until(lambda: "alice" not in chat_server.directory)
        assert chat_server.store.list_files() == []
        assert list(chat_server.store.files_dir.iterdir()) == []

    def test_missing_file(self, connect):
        alice = connect("alice")
        with pytest.raises(NotFound):
            alice.download_file("123_nothing.bin")
        alice.command("/getfile", "Please specify a file name. Usage: /getfile FileName")

    def test_traversal_id_is_not_served(self, connect):
        alice = connect("alice")
        alice.command("/getfile ../../etc/passwd", "ERROR: File not found")

    def test_dot_file_is_shared_not_broadcast_as_chat(self, connect):
        # given
        alice = connect("alice")
        bob = connect("bob")
        bob.drain()

        # when
        reply = alice.upload_file(".env", b"API_KEY=hunter2\n")

        # then
        assert reply == "File uploaded successfully as: .env"
        bob.expect("alice shared a file: .env (16.00 B)")
        file_id = bob.expect("Use /getfile ").split()[2]
        assert bob.download_file(file_id).data == b"API_KEY=hunter2\n"
        bob.drain()
        assert not any("API_KEY" in l for l in bob.transcript)

    def test_refused_name_still_consumes_payload(self, connect, chat_server):
        # given
        alice = connect("alice")
        bob = connect("bob")
        bob.drain()
        payload = b"first SMUGGLED\nsecond SMUGGLED\n"

        # when: the name is refused after the size line, payload already in flight
        alice.command("/sendfile", READY_TO_RECEIVE_FILE)
        alice.conn.write_block(["..", str(len(payload)), payload])

        # then
        alice.expect("ERROR: Invalid file name")
        alice.command("/rooms", "Available rooms:")
        bob.drain()
        assert not any("SMUGGLED" in l for l in bob.transcript)
        assert chat_server.store.list_files() == []

    def test_storage_failure_mid_upload_keeps_stream_in_sync(self, connect, chat_server, monkeypatch):
        # given: the disk fills up after the first chunk
        alice = connect("alice")
        bob = connect("bob")
        bob.drain()
        real_write = Upload.write

        def write_until_full(upload, chunk):
            if upload.received:
                raise OSError(errno.ENOSPC, "No space left on device")
            real_write(upload, chunk)

        monkeypatch.setattr(Upload, "write", write_until_full)
        payload = b"x" * 70_000 + b"\nSMUGGLED_LINE\n"

        # when
        alice.command("/sendfile", READY_TO_RECEIVE_FILE)
        alice.conn.write_block(["disk.bin", str(len(payload)), payload])

        # then
        alice.expect("Error receiving file: ")
        alice.command("/rooms", "Available rooms:")
        bob.drain()
        assert not any("SMUGGLED_LINE" in l for l in bob.transcript)
        assert chat_server.store.list_files() == []
        assert list(chat_server.store.files_dir.iterdir()) == []


class TestVoiceTransfer:
    def test_round_trip(self, connect):
        # given
        alice = connect("alice")
        bob = connect("bob")
        clip = b"RIFF" + bytes(range(256)) * 64

        # when
        reply = alice.upload_voice(clip, 5300)

        # then
        assert reply == "Voice message uploaded successfully (Duration: 5 seconds)"
        bob.expect("alice shared a voice message (Duration: 5 seconds)")
        voice_id = bob.expect("Use /getvoice ").split()[2]
        assert voice_id.startswith("alice_")

        received = bob.download_voice(voice_id)
        assert received.data == clip
        bob.expect("Voice message download complete")

    def test_listvoices(self, connect):
        alice = connect("alice")
        alice.command("/listvoices", "Available voice messages:")
        alice.expect("No voice messages available")

        alice.upload_voice(b"\x00" * 2048, 1000)
        alice.send_line("/listvoices")
        alice.expect("Available voice messages:")
        assert re.match(r"^- alice_\d+ \(2\.00 KB\)$", alice.next_line())
        alice.expect("Use /getvoice VoiceID to download a voice message")

    def test_oversized_voice_is_refused(self, connect, chat_server):
        alice = connect("alice")
        alice.command("/sendvoice", READY_TO_RECEIVE_VOICE)
        alice.send_line("1000")
        alice.send_line(str(20 * 1024 * 1024))

        alice.expect("ERROR: Voice message too large. Maximum size is 10.00 MB")
        alice.command("/rooms", "Available rooms:")
        assert chat_server.store.list_voices() == []

    def test_cancelled_voice_upload(self, connect):
        alice = connect("alice")
        alice.cancel_voice_upload()
        alice.command("/listvoices", "Available voice messages:")
        alice.expect("No voice messages available")

    def test_missing_voice(self, connect):
        alice = connect("alice")
        with pytest.raises(NotFound):
            alice.download_voice("nobody_1")
        alice.command("/getvoice", "Please specify a voice message ID. Usage: /getvoice VoiceID")

    def test_progress_is_reported_in_steps(self, connect):
        alice = connect("alice")
        alice.drain()

        alice.upload_voice(b"v" * 400_000, 2000)

        progress = [
            int(m.group(1))
            for m in map(VOICE_PROGRESS_LINE.match, alice.transcript)
            if m
        ]
        assert progress
        assert all(b - a >= 10 for a, b in zip(progress, progress[1:]))
        assert progress[-1] <= 100

    def test_invalid_duration_is_reported(self, connect, chat_server):
        # given
        alice = connect("alice")
        bob = connect("bob")
        bob.drain()

        # when: a well-formed size follows a bad duration
        alice.command("/sendvoice", READY_TO_RECEIVE_VOICE)
        alice.conn.write_block(["soon", "6", b"HIDDEN"])

        # then
        alice.expect("ERROR: Invalid voice message duration")
        alice.command("/rooms", "Available rooms:")
        bob.drain()
        assert not any("HIDDEN" in l for l in bob.transcript)
        assert chat_server.store.list_voices() == []

    def test_invalid_size_is_reported(self, connect, chat_server):
        alice = connect("alice")
        alice.command("/sendvoice", READY_TO_RECEIVE_VOICE)
        alice.send_line("1000")
        alice.send_line("lots")

        alice.expect("ERROR: Invalid voice message size")
        alice.command("/rooms", "Available rooms:")
        assert chat_server.store.list_voices() == []
