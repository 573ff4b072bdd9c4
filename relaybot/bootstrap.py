"""
Session bootstrap.

Runs once at startup and decides where the transport's credentials come from:
an existing local blob, a blob fetched from a remote archive, or interactive
pairing. Only a malformed locator is fatal; a failed fetch degrades to pairing.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from relaybot import perf
from relaybot.credentials import CredentialStore
from relaybot.errors import FetchError
from relaybot.remote import SessionFetcher, parse_locator

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")


class SessionSource(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    INTERACTIVE = "interactive"


class SessionBootstrapper:
    """Guarantees that on return either local credentials exist or pairing is required."""

    def __init__(
        self,
        store: CredentialStore,
        fetcher: SessionFetcher,
        locator: Optional[str] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.locator = locator

    async def bootstrap(self) -> SessionSource:
        if self.store.exists():
            log.info(f"Using local credentials at {self.store.path}")
            lifecycle_log.info("BOOTSTRAP | LOCAL")
            return SessionSource.LOCAL

        if not self.locator:
            log.warning("No local credentials and no SESSION_LOCATOR; interactive pairing required")
            lifecycle_log.info("BOOTSTRAP | INTERACTIVE | reason=no_locator")
            return SessionSource.INTERACTIVE

        # ConfigurationError propagates: a malformed locator is fatal
        locator = parse_locator(self.locator)

        log.info(f"Fetching session from remote archive ({locator})")
        try:
            blob = await asyncio.to_thread(self.fetcher.fetch, locator)
        except FetchError as e:
            log.error(f"Remote session fetch failed, falling back to pairing: {e}")
            lifecycle_log.info(f"BOOTSTRAP | INTERACTIVE | reason=fetch_failed | {e}")
            perf.error("session_fetch", archive=locator.archive_id)
            return SessionSource.INTERACTIVE

        await self.store.save(blob)
        log.info(f"Remote session saved to {self.store.path}")
        lifecycle_log.info(f"BOOTSTRAP | REMOTE | bytes={len(blob)}")
        return SessionSource.REMOTE
