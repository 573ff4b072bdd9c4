"""
Shared fixtures for relaybot tests.

Tests exercise the daemon without a real messaging service. FakeTransport
stands in for a transport socket: it records every outbound call and lets a
test emit inbound events through the listeners relaybot registers.
"""
from __future__ import annotations

import inspect
import sys
from pathlib import Path
from typing import Any, Optional
from unittest.mock import patch

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from relaybot import config, perf
from relaybot.config import Settings
from relaybot.credentials import CredentialStore
from relaybot.dispatcher import EventDispatcher
from relaybot.errors import FetchError
from relaybot.events import Message, _freeze
from relaybot.registry import HandlerRegistry

BOT_JID = "15550000001:3@s.whatsapp.net"
OWNER_NUMBER = "+1 555 000 0009"
STRANGER_JID = "15550000077@s.whatsapp.net"


class FakeTransport:
    """In-memory transport socket."""

    def __init__(self, options=None, user_jid: Optional[str] = BOT_JID):
        self.options = options
        self.user_jid = user_jid
        self.listeners: dict[str, list] = {}
        self.sent: list[tuple[str, dict, dict]] = []
        self.read: list[list[dict]] = []
        self.closed = False
        self.fail_send = False

    def on(self, event: str, listener) -> None:
        self.listeners.setdefault(event, []).append(listener)

    async def emit(self, event: str, payload: Any) -> None:
        for listener in list(self.listeners.get(event, [])):
            result = listener(payload)
            if inspect.isawaitable(result):
                await result

    async def send_message(self, jid: str, content: dict, **options: Any) -> dict:
        if self.fail_send:
            raise ConnectionError("socket write failed")
        self.sent.append((jid, content, options))
        return {"key": {"id": f"OUT{len(self.sent)}"}}

    async def read_messages(self, keys) -> None:
        self.read.append(list(keys))

    async def close(self) -> None:
        self.closed = True

    # Convenience emitters

    async def open(self) -> None:
        await self.emit("connection.update", {"connection": "open"})

    async def close_with(self, status_code: Optional[int]) -> None:
        update: dict = {"connection": "close"}
        if status_code is not None:
            update["lastDisconnect"] = {"error": {"output": {"statusCode": status_code}}}
        await self.emit("connection.update", update)


class FakeFactory:
    """Transport factory that records every socket it builds."""

    def __init__(self, errors: Optional[list[BaseException]] = None):
        self.sockets: list[FakeTransport] = []
        self.options: list = []
        self.errors = list(errors or [])

    def __call__(self, options):
        self.options.append(options)
        if self.errors:
            raise self.errors.pop(0)
        socket = FakeTransport(options)
        self.sockets.append(socket)
        return socket

    @property
    def calls(self) -> int:
        return len(self.options)

    @property
    def latest(self) -> FakeTransport:
        return self.sockets[-1]


class FakeFetcher:
    """Remote session fetcher returning a fixed blob (or failing)."""

    def __init__(self, blob: bytes = b'{"creds": "remote"}', error: Optional[Exception] = None):
        self.blob = blob
        self.error = error
        self.calls: list = []

    def fetch(self, locator) -> bytes:
        self.calls.append(locator)
        if self.error is not None:
            raise self.error
        return self.blob


def make_message(
    chat: str = STRANGER_JID,
    text: Optional[str] = "hello",
    from_me: bool = False,
    participant: Optional[str] = None,
    msg_id: str = "MSG1",
) -> Message:
    key = {"remoteJid": chat, "fromMe": from_me, "id": msg_id}
    if participant:
        key["participant"] = participant
    raw: dict = {"key": key, "pushName": "Tester"}
    if text is not None:
        raw["message"] = {"conversation": text}
    return Message(raw=_freeze(raw))


def make_status(author: str = STRANGER_JID, msg_id: str = "STATUS1", from_me: bool = False) -> Message:
    return make_message(chat="status@broadcast", participant=author, msg_id=msg_id, from_me=from_me, text="my status")


# ── fixtures ────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def perf_dir(tmp_path):
    """Keep metric files out of the home directory."""
    with patch.object(perf, "PERF_DIR", tmp_path / "perf"):
        yield tmp_path / "perf"


@pytest.fixture(autouse=True)
def reset_config():
    """Reset config module state before and after each test."""
    config._config = {}
    config._loaded = False
    config._settings = None
    yield
    config._config = {}
    config._loaded = False
    config._settings = None


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        values = {"home_dir": tmp_path / "home", "auto_status_seen": False, "startup_notify": True}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "home" / "sessions" / "creds.json")


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def dispatcher(registry, store):
    return EventDispatcher(registry, store)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def failing_fetcher():
    return FakeFetcher(error=FetchError("archive API error -9: file not found"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def message():
    return make_message


@pytest.fixture
def status():
    return make_status
