"""Shared fixtures for sshmon tests."""

import random
from concurrent.futures import Future
from typing import Any, Dict, List, Tuple

import pytest

from sshmon.command_handler import ShellEmulator
from sshmon.filesystem import VirtualFilesystem, home_for
from sshmon.profiles import PROFILES
from sshmon.registry import SessionRegistry
from sshmon.session import Session, SessionController


class RecordingEvents:
    """Event sink that keeps every emitted event in memory."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [fields for event, fields in self.events if event == kind]

    def kinds(self) -> List[str]:
        return [event for event, _ in self.events]


class FakeChannel:
    """Stand-in for a paramiko Channel that records what is sent."""

    def __init__(self):
        self.sent: List[bytes] = []
        self.closed = False
        self.exit_status = None

    def send(self, data: bytes) -> int:
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.append(data)
        return len(data)

    def send_exit_status(self, status: int) -> None:
        self.exit_status = status

    def close(self) -> None:
        self.closed = True

    @property
    def text(self) -> str:
        return b"".join(self.sent).decode("utf-8")


class InlineExecutor:
    """Executor that runs submitted work immediately on the caller's thread."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


@pytest.fixture
def pi():
    return PROFILES["raspberry-pi"]


@pytest.fixture
def ubuntu():
    return PROFILES["ubuntu-server"]


@pytest.fixture
def iot():
    return PROFILES["generic-iot"]


@pytest.fixture
def filesystem(pi):
    return VirtualFilesystem(pi)


def make_shell(persona, username=None, rng_seed=1):
    username = username or persona.default_username
    session = Session(peer_ip="203.0.113.9", peer_port=40000, username=username)
    fs = VirtualFilesystem(persona, home=home_for(persona, username))
    downloads: List[Tuple[str, str]] = []
    shell = ShellEmulator(
        persona,
        fs,
        session,
        username=username,
        rng=random.Random(rng_seed),
        on_download=lambda url, tool: downloads.append((url, tool)),
    )
    shell.downloads = downloads
    return shell


@pytest.fixture
def shell_for():
    return make_shell


@pytest.fixture
def shell(pi):
    """Interactive shell on the Raspberry Pi persona, logged in as root."""
    return make_shell(pi)


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def new_channel():
    return FakeChannel


@pytest.fixture
def registry():
    return SessionRegistry(max_sessions=10)


@pytest.fixture
def make_controller(pi, registry, events):
    """Factory for controllers wired to in-memory collaborators."""

    def factory(peer_ip="203.0.113.9", peer_port=40000, **kwargs):
        options = dict(
            persona=pi,
            registry=registry,
            events=events,
            idle_timeout=0,
            command_delay=0.0,
            rng=random.Random(7),
            executor=InlineExecutor(),
        )
        options.update(kwargs)
        return SessionController(Session(peer_ip=peer_ip, peer_port=peer_port), **options)

    return factory
