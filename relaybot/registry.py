"""
Handler registry.

An ordered, append-only list of message handlers. Each registration pairs an
async action `action(message, transport)` with a predicate deciding whether it
applies. Two kinds share the list:

- "command": the plugin/command chain, run first for every message;
- "behavior": conditional built-in behaviors (auto-react, status-seen, ...).

Within a kind, handlers run in registration order.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Optional

from relaybot.events import Message

log = logging.getLogger(__name__)

COMMAND = "command"
BEHAVIOR = "behavior"
KINDS = (COMMAND, BEHAVIOR)

Predicate = Callable[[Message], bool]
Action = Callable[[Message, Any], Awaitable[None]]


def always(_message: Message) -> bool:
    return True


@dataclass(frozen=True)
class HandlerRegistration:
    name: str
    action: Action
    predicate: Predicate = always
    kind: str = BEHAVIOR
    source: str = field(default="builtin", compare=False)

    def applies(self, message: Message) -> bool:
        return bool(self.predicate(message))

    async def invoke(self, message: Message, transport: Any) -> None:
        result = self.action(message, transport)
        if inspect.isawaitable(result):
            await result


class HandlerRegistry:
    """Append-only, ordered set of handler registrations."""

    def __init__(self):
        self._entries: list[HandlerRegistration] = []

    def register(
        self,
        name: str,
        action: Action,
        predicate: Optional[Predicate] = None,
        kind: str = BEHAVIOR,
        source: str = "builtin",
    ) -> HandlerRegistration:
        if not name:
            raise ValueError("handler name cannot be empty")
        if kind not in KINDS:
            raise ValueError(f"unknown handler kind {kind!r}, expected one of {KINDS}")
        if not callable(action):
            raise TypeError(f"handler {name!r} action is not callable")
        if predicate is not None and not callable(predicate):
            raise TypeError(f"handler {name!r} predicate is not callable")

        entry = HandlerRegistration(
            name=name,
            action=action,
            predicate=predicate or always,
            kind=kind,
            source=source,
        )
        self._entries.append(entry)
        log.debug(f"Registered {kind} handler {name} from {source}")
        return entry

    def command(self, name: str, predicate: Optional[Predicate] = None, source: str = "builtin"):
        """Decorator form for plugins: `@registry.command("ping")`."""

        def decorator(fn: Action) -> Action:
            self.register(name, fn, predicate=predicate, kind=COMMAND, source=source)
            return fn

        return decorator

    def commands(self) -> list[HandlerRegistration]:
        return [e for e in self._entries if e.kind == COMMAND]

    def behaviors(self) -> list[HandlerRegistration]:
        return [e for e in self._entries if e.kind == BEHAVIOR]

    def names(self) -> list[str]:
        return [e.name for e in self._entries]

    def __iter__(self) -> Iterator[HandlerRegistration]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
