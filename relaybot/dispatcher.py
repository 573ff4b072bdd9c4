"""
Event dispatcher.

Routes every inbound event to its handlers:

- Message: command chain first (plugins, gated by mode), then conditional
  behaviors, all sequential in registration order. A handler failure is logged
  and never stops the next handler or the next event. History-sync batches
  (upsert type other than "notify") reach no handler.
- Call / GroupParticipantsUpdate: their single dedicated handler.
- CredsUpdate: persisted to the credential store, always, before returning.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from relaybot import perf
from relaybot.credentials import CredentialStore
from relaybot.errors import HandlerError
from relaybot.events import Call, CredsUpdate, GroupParticipantsUpdate, InboundEvent, Message
from relaybot.registry import HandlerRegistration, HandlerRegistry, Predicate, always

log = logging.getLogger(__name__)


class EventHandler(Protocol):
    name: str

    async def handle(self, event: Any, transport: Any) -> None:
        ...


@dataclass
class DispatchReport:
    """What happened to one event. Returned for logging and tests."""

    kind: str
    invoked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class EventDispatcher:
    def __init__(
        self,
        registry: HandlerRegistry,
        store: CredentialStore,
        call_handler: Optional[EventHandler] = None,
        group_handler: Optional[EventHandler] = None,
        command_gate: Predicate = always,
    ):
        self.registry = registry
        self.store = store
        self.call_handler = call_handler
        self.group_handler = group_handler
        self.command_gate = command_gate
        self.dispatched = 0

    async def dispatch(self, event: InboundEvent, transport: Any) -> DispatchReport:
        start = time.perf_counter()
        if isinstance(event, CredsUpdate):
            report = await self._on_creds(event)
        elif isinstance(event, Message):
            report = await self._on_message(event, transport)
        elif isinstance(event, Call):
            report = await self._on_single(self.call_handler, event, transport)
        elif isinstance(event, GroupParticipantsUpdate):
            report = await self._on_single(self.group_handler, event, transport)
        else:
            log.warning(f"Dropping unknown event type {type(event).__name__}")
            return DispatchReport(kind="unknown", skipped=True)

        self.dispatched += 1
        perf.timing("dispatch_ms", (time.perf_counter() - start) * 1000, event=report.kind)
        return report

    async def _on_creds(self, event: CredsUpdate) -> DispatchReport:
        report = DispatchReport(kind=event.kind)
        try:
            await self.store.save(event.blob)
            report.invoked.append("credential_store")
        except Exception as e:
            # A lost update desyncs local state from the service
            log.error(f"Failed to persist credential update to {self.store.path}: {e}")
            perf.error("creds_write")
            report.failed.append("credential_store")
        return report

    async def _on_message(self, message: Message, transport: Any) -> DispatchReport:
        report = DispatchReport(kind=message.kind)
        if not message.has_payload:
            log.debug(f"Ignoring message {message.id or '?'} without payload")
            report.skipped = True
            return report
        if not message.is_live:
            log.debug(f"Ignoring backfilled message {message.id or '?'} ({message.upsert_type})")
            report.skipped = True
            return report

        if self._gate_commands(message):
            for entry in self.registry.commands():
                await self._run(entry, message, transport, report)

        for entry in self.registry.behaviors():
            await self._run(entry, message, transport, report)

        return report

    def _gate_commands(self, message: Message) -> bool:
        try:
            return bool(self.command_gate(message))
        except Exception as e:
            log.error(f"Command gate failed for {message.id}: {e}")
            return False

    async def _run(
        self,
        entry: HandlerRegistration,
        message: Message,
        transport: Any,
        report: DispatchReport,
    ) -> None:
        try:
            if not entry.applies(message):
                return
            report.invoked.append(entry.name)
            await entry.invoke(message, transport)
        except Exception as e:
            self._record_failure(HandlerError(entry.name, message.kind, e), report)

    async def _on_single(self, handler: Optional[EventHandler], event: Any, transport: Any) -> DispatchReport:
        report = DispatchReport(kind=event.kind)
        if handler is None:
            report.skipped = True
            return report
        name = getattr(handler, "name", type(handler).__name__)
        report.invoked.append(name)
        try:
            await handler.handle(event, transport)
        except Exception as e:
            self._record_failure(HandlerError(name, event.kind, e), report)
        return report

    def _record_failure(self, err: HandlerError, report: DispatchReport) -> None:
        log.error(f"Handler {err.handler} failed on {err.event_kind}: {err.cause!r}", exc_info=err.cause)
        perf.incr("handler_errors", handler=err.handler, event=err.event_kind)
        report.failed.append(err.handler)
