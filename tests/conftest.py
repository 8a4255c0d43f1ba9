# tests/conftest.py
import logging
import threading
import time

import pytest

from client import ChatClient
from config import default_config
from directory import ClientDirectory
from rooms import RoomRegistry
from server import ChatServer
from transfers import TransferStore


@pytest.fixture(scope="session", autouse=True)
def initialize_test_logger():
    """Route server logs through a single stream handler"""
    logger = logging.getLogger("roomchat")
    logger.setLevel("DEBUG")
    logger.propagate = False
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        fmt="[%(levelname)5s][%(filename)s:%(lineno)s] %(message)s",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


class FakeSession:
    """Stands in for a Session wherever only username/send/current_room are used"""

    def __init__(self, username: str):
        self.username = username
        self.current_room = None
        self.lines: list[str] = []

    def send(self, message: str) -> bool:
        self.lines.extend(message.split("\n"))
        return True


# === Component fixtures ===
@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def directory():
    return ClientDirectory()


@pytest.fixture
def registry(tmp_path):
    registry = RoomRegistry(log_dir=tmp_path / "logs")
    yield registry
    registry.close_all()


@pytest.fixture
def store(tmp_path):
    store = TransferStore(tmp_path / "files", tmp_path / "voices", max_size=1024 * 1024)
    store.ensure_directories()
    return store


# === Live server fixtures ===
@pytest.fixture
def server_config(tmp_path):
    return default_config(
        host="127.0.0.1",
        port=0,
        log_dir=str(tmp_path / "server_logs"),
        files_dir=str(tmp_path / "shared_files"),
        voices_dir=str(tmp_path / "voice_messages"),
    )


@pytest.fixture
def chat_server(server_config):
    server = ChatServer(server_config)
    server.bind()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join(5)


@pytest.fixture
def connect(chat_server):
    """Factory: connect (and optionally log in) a client to the live server"""
    clients = []

    def _connect(username: str | None = None) -> ChatClient:
        host, port = chat_server.address
        client = ChatClient(host, port)
        assert client.connect()
        clients.append(client)
        if username is not None:
            assert client.login(username)
        return client

    yield _connect

    for client in clients:
        client.close()


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
