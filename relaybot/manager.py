#!/usr/bin/env python3
"""
relaybot daemon.

- Bootstraps the session (local creds, remote archive, or pairing)
- Owns the connection lifecycle (connect, reconnect, halt on logout)
- Dispatches inbound events to built-in behaviors and plugins
- Serves the liveness endpoint on PORT
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from relaybot import config, perf
from relaybot.behaviors import CallHandler, GroupParticipantsHandler, command_gate, register_builtin_behaviors
from relaybot.bootstrap import SessionBootstrapper, SessionSource
from relaybot.config import Settings
from relaybot.credentials import CredentialStore
from relaybot.dispatcher import EventDispatcher
from relaybot.health import HealthServer, create_app
from relaybot.lifecycle import ConnectionManager, DisconnectClassifier, RetryPolicy
from relaybot.plugins import PluginLoader
from relaybot.registry import HandlerRegistry
from relaybot.remote import MegaSessionFetcher, SessionFetcher
from relaybot.transport import ClientIdentity, TransportFactory, TransportOptions, TransportSocket, load_factory

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'


def setup_logging(settings: Settings) -> None:
    """Stream logging for everything, plus the lifecycle file under <home>/logs."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler()
        ]
    )
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    lifecycle_path = settings.logs_dir / "session_lifecycle.log"
    if not any(getattr(h, "baseFilename", None) == str(lifecycle_path) for h in lifecycle_log.handlers):
        lifecycle_handler = logging.FileHandler(lifecycle_path)
        lifecycle_handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
        lifecycle_log.addHandler(lifecycle_handler)
    lifecycle_log.setLevel(logging.INFO)
    perf.configure(settings.logs_dir)


class Manager:
    """Wires every component from Settings and runs until the connection halts."""

    def __init__(
        self,
        settings: Settings,
        transport_factory: Optional[TransportFactory] = None,
        fetcher: Optional[SessionFetcher] = None,
    ):
        self.settings = settings
        self.store = CredentialStore(settings.creds_path)
        self.registry = HandlerRegistry()
        register_builtin_behaviors(self.registry, settings)
        self.plugins = PluginLoader(self.registry)

        self.bootstrapper = SessionBootstrapper(
            self.store,
            fetcher or MegaSessionFetcher(timeout=settings.fetch_timeout),
            settings.session_locator,
        )
        self.source = SessionSource.INTERACTIVE

        self.dispatcher = EventDispatcher(
            self.registry,
            self.store,
            call_handler=CallHandler(settings),
            group_handler=GroupParticipantsHandler(settings),
            command_gate=command_gate(settings, self_jid=self._self_jid),
        )
        self.connection = ConnectionManager(
            transport_factory or load_factory(settings.transport_factory),
            self.transport_options,
            self.dispatcher,
            startup_actions=[self._load_plugins, self._notify_startup],
            policy=RetryPolicy(
                base_delay=settings.reconnect_base_delay,
                max_delay=settings.reconnect_max_delay,
                max_attempts=settings.reconnect_max_attempts,
            ),
            classifier=DisconnectClassifier(settings.terminal_status_codes),
            connect_timeout=settings.connect_timeout,
            credentials_path=settings.creds_path,
        )
        self.health = HealthServer(
            create_app(self.connection, plugin_count=lambda: len(self.plugins.loaded)),
            host=settings.host,
            port=settings.port,
        )

    def _self_jid(self) -> Optional[str]:
        return getattr(self.connection.transport, "user_jid", None)

    def transport_options(self) -> TransportOptions:
        """Options for the next socket. Rebuilt per attempt so a paired session reconnects from disk."""
        source = SessionSource.LOCAL if self.store.exists() else self.source
        return TransportOptions(
            credentials_dir=self.settings.session_dir,
            source=source.value,
            client_identity=ClientIdentity(
                platform=self.settings.client_platform,
                browser=self.settings.client_browser,
            ),
            protocol_version=tuple(self.settings.protocol_version) if self.settings.protocol_version else None,
            sync_full_history=self.settings.sync_full_history,
        )

    # ── startup actions (first open only) ───────────────────────

    async def _load_plugins(self, transport: TransportSocket) -> None:
        await asyncio.to_thread(self.plugins.load_all, self.settings.plugin_path)

    async def _notify_startup(self, transport: TransportSocket) -> None:
        if not self.settings.startup_notify:
            return
        me = getattr(transport, "user_jid", None)
        if not me:
            log.warning("Startup notification skipped: transport reports no user id")
            return
        text = (
            f"{self.settings.bot_name} connected.\n"
            f"Mode: {self.settings.mode}\n"
            f"Handlers: {len(self.registry.commands())} command(s), {len(self.registry.behaviors())} behavior(s)"
        )
        await transport.send_message(me, {"text": text})
        log.info(f"Startup notification sent to {me}")

    # ── run ──────────────────────────────────────────────────────

    async def run(self) -> int:
        """Main async loop. Returns the process exit status."""
        log.info("=" * 60)
        log.info(f"{self.settings.bot_name} starting (mode={self.settings.mode})...")
        log.info(f"Session directory: {self.settings.session_dir}")
        log.info("=" * 60)
        lifecycle_log.info(f"DAEMON | START | mode={self.settings.mode}")

        self.settings.session_dir.mkdir(parents=True, exist_ok=True)
        with perf.timed("bootstrap_ms"):
            self.source = await self.bootstrapper.bootstrap()

        server_task = asyncio.create_task(self.health.serve())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self.connection.stop(s.name)))

        try:
            await self.connection.connect()
            code = await self.connection.wait_stopped()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            self.health.shutdown()
            try:
                await asyncio.wait_for(server_task, timeout=5)
            except asyncio.TimeoutError:
                log.warning("Health endpoint did not stop in time")
            await self.connection.stop("exit")

        log.info(f"Daemon exiting with status {code}")
        lifecycle_log.info(f"DAEMON | EXIT | code={code}")
        return code


def main() -> int:
    settings = config.settings()
    setup_logging(settings)
    manager = Manager(settings)
    return asyncio.run(manager.run())


if __name__ == "__main__":
    raise SystemExit(main())
