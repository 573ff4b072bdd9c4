"""
Error taxonomy.

ConfigurationError is fatal and never retried. FetchError degrades bootstrap to
interactive pairing. TransportSetupError carries an optional status code so the
connection manager can classify it like a closure. HandlerError and
PluginLoadError are always isolated and logged.
"""
from __future__ import annotations

from typing import Optional


class RelaybotError(Exception):
    """Base class for all relaybot errors."""


class ConfigurationError(RelaybotError):
    """Malformed or missing configuration. Fatal."""


class FetchError(RelaybotError):
    """Remote session retrieval failed (network, API or decryption)."""


class TransportSetupError(RelaybotError):
    """Transport socket could not be constructed or opened."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HandlerError(RelaybotError):
    """A handler raised while processing an event."""

    def __init__(self, handler: str, event_kind: str, cause: BaseException):
        super().__init__(f"{handler} failed on {event_kind}: {cause!r}")
        self.handler = handler
        self.event_kind = event_kind
        self.cause = cause


class PluginLoadError(RelaybotError):
    """A plugin file could not be loaded or registered."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
