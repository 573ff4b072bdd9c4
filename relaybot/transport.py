"""
Transport socket seam.

relaybot does not speak the messaging protocol itself. A transport library is
plugged in through a factory configured as a dotted path
(`TRANSPORT_FACTORY=package.module:make_socket`). The factory receives
TransportOptions and returns an object satisfying TransportSocket, already
connecting; lifecycle progress is reported through `connection.update`.
"""
from __future__ import annotations

import importlib
import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict

from relaybot.errors import ConfigurationError

Listener = Callable[[Any], Union[Awaitable[None], None]]


@runtime_checkable
class TransportSocket(Protocol):
    """What relaybot needs from a transport.

    Emits (via listeners registered with on()):
        connection.update          {"connection": "open"|"close"|"connecting", "lastDisconnect": {...}, "qr": str}
        creds.update               credential blob
        messages.upsert            {"messages": [...], "type": "notify"|"append"}
        call                       [call, ...]
        group-participants.update  {"id": group_jid, "participants": [...], "action": "add"|"remove"|...}
    """

    user_jid: Optional[str]

    def on(self, event: str, listener: Listener) -> None:
        ...

    async def send_message(self, jid: str, content: dict, **options: Any) -> Any:
        ...

    async def read_messages(self, keys: Sequence[dict]) -> None:
        ...

    async def close(self) -> None:
        ...


class ClientIdentity(BaseModel):
    """How the client presents itself to the service (browser tuple)."""

    model_config = ConfigDict(frozen=True)

    platform: str = "macOS"
    browser: str = "Firefox"
    version: str = "14.4.1"

    def as_tuple(self) -> tuple[str, str, str]:
        return (self.platform, self.browser, self.version)


class TransportOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    credentials_dir: Path
    source: str
    client_identity: ClientIdentity = ClientIdentity()
    protocol_version: Optional[tuple[int, ...]] = None
    sync_full_history: bool = True

    @property
    def pairing(self) -> bool:
        """True when the transport must run interactive pairing (QR / code)."""
        return self.source == "interactive"


TransportFactory = Callable[[TransportOptions], Union[TransportSocket, Awaitable[TransportSocket]]]


def load_factory(dotted: Optional[str]) -> TransportFactory:
    """Resolve `package.module:callable` (or `package.module.callable`)."""
    if not dotted or not dotted.strip():
        raise ConfigurationError(
            "TRANSPORT_FACTORY is not set; point it at a callable returning a transport socket "
            "(e.g. TRANSPORT_FACTORY=mytransport.socket:make_socket)"
        )
    dotted = dotted.strip()
    if ":" in dotted:
        module_name, attr = dotted.split(":", 1)
    else:
        module_name, _, attr = dotted.rpartition(".")
    if not module_name or not attr:
        raise ConfigurationError(f"TRANSPORT_FACTORY {dotted!r} is not a dotted path to a callable")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"TRANSPORT_FACTORY module {module_name!r} cannot be imported: {e}") from e

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"TRANSPORT_FACTORY {dotted!r} does not name a callable")
    return factory


async def call_factory(factory: TransportFactory, options: TransportOptions) -> TransportSocket:
    socket = factory(options)
    if inspect.isawaitable(socket):
        socket = await socket
    return socket


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if obj is None:
            return None
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def extract_status_code(update: Any) -> Optional[int]:
    """Status code of a close update: lastDisconnect.error.output.statusCode.

    Accepts dicts or objects, camelCase or snake_case. Returns None when absent.
    """
    last = _field(update, "lastDisconnect", "last_disconnect")
    error = _field(last, "error")
    code = None
    output = _field(error, "output")
    if output is not None:
        code = _field(output, "statusCode", "status_code")
    if code is None:
        code = _field(error, "statusCode", "status_code")
    if code is None:
        code = _field(last, "statusCode", "status_code")
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None
