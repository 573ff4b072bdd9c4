"""
Connection lifecycle.

ConnectionManager owns the transport socket and drives:

    DISCONNECTED --connect()--> CONNECTING --"open"--> OPEN
    OPEN --"close", recoverable--> CLOSED_RECOVERABLE --> CONNECTING (new socket)
    OPEN --"close", terminal-->    CLOSED_TERMINAL    --> DISCONNECTED (halt)
    any --unrecoverable setup error--> DISCONNECTED (halt, fatal)

Closures are classified by status code through DISCONNECT_REASONS. Logout is
terminal; everything else reconnects under a RetryPolicy. Startup actions run
on the first OPEN of the process and never again on reconnect.

All mutable session state lives on one SessionState owned by the manager.
"""
from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from relaybot import perf
from relaybot.dispatcher import EventDispatcher
from relaybot.errors import ConfigurationError, TransportSetupError
from relaybot.events import CONNECTION_UPDATE, DISPATCHED_EVENTS, from_transport
from relaybot.transport import TransportFactory, TransportOptions, TransportSocket, call_factory, extract_status_code

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

EXIT_OK = 0
EXIT_FATAL = 1


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_RECOVERABLE = "closed_recoverable"
    CLOSED_TERMINAL = "closed_terminal"


class Closure(str, Enum):
    RECOVERABLE = "recoverable"
    TERMINAL = "terminal"


LOGGED_OUT = 401

# Recent state transitions kept on SessionState for diagnostics
HISTORY_LIMIT = 50

# status code -> (label, classification)
DISCONNECT_REASONS: dict[int, tuple[str, Closure]] = {
    LOGGED_OUT: ("logged_out", Closure.TERMINAL),
    403: ("forbidden", Closure.RECOVERABLE),
    408: ("connection_lost", Closure.RECOVERABLE),
    411: ("multidevice_mismatch", Closure.RECOVERABLE),
    428: ("connection_closed", Closure.RECOVERABLE),
    440: ("connection_replaced", Closure.RECOVERABLE),
    500: ("bad_session", Closure.RECOVERABLE),
    503: ("unavailable_service", Closure.RECOVERABLE),
    515: ("restart_required", Closure.RECOVERABLE),
}


class DisconnectClassifier:
    """Table lookup with configurable extra terminal codes. Unknown codes are recoverable."""

    def __init__(self, extra_terminal: Iterable[int] = (), table: Optional[dict] = None):
        self.table = dict(table if table is not None else DISCONNECT_REASONS)
        for code in extra_terminal:
            label = self.table.get(code, (f"status_{code}", Closure.TERMINAL))[0]
            self.table[code] = (label, Closure.TERMINAL)

    def classify(self, status_code: Optional[int]) -> Closure:
        if status_code is None:
            return Closure.RECOVERABLE
        return self.table.get(status_code, ("", Closure.RECOVERABLE))[1]

    def describe(self, status_code: Optional[int]) -> str:
        if status_code is None:
            return "unknown"
        return self.table.get(status_code, (f"status_{status_code}", Closure.RECOVERABLE))[0]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter. max_attempts=None retries forever."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    jitter: float = 0.2
    max_attempts: Optional[int] = None

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * (self.factor ** max(0, attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 1 - self.jitter + 2 * self.jitter * rand()
        return max(0.0, delay)


@dataclass
class SessionState:
    """Everything the manager mutates, in one place."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    transport: Optional[TransportSocket] = None
    generation: int = 0
    attempts: int = 0
    opened_count: int = 0
    startup_done: bool = False
    last_status_code: Optional[int] = None
    last_reason: str = ""
    opened_at: Optional[datetime] = None
    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))


StartupAction = Callable[[TransportSocket], Awaitable[Any]]


class ConnectionManager:
    def __init__(
        self,
        factory: TransportFactory,
        options: Callable[[], TransportOptions],
        dispatcher: EventDispatcher,
        startup_actions: Iterable[StartupAction] = (),
        policy: RetryPolicy = RetryPolicy(),
        classifier: Optional[DisconnectClassifier] = None,
        connect_timeout: Optional[float] = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        credentials_path: Optional[Path] = None,
    ):
        self.factory = factory
        self.options = options
        self.dispatcher = dispatcher
        self.startup_actions = list(startup_actions)
        self.policy = policy
        self.classifier = classifier or DisconnectClassifier()
        self.connect_timeout = connect_timeout
        self._sleep = sleep
        self.credentials_path = credentials_path

        self.session = SessionState()
        self.exit_code: Optional[int] = None
        self._stopped = asyncio.Event()
        self._watchdog: Optional[asyncio.Task] = None

    # ── state ────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def transport(self) -> Optional[TransportSocket]:
        return self.session.transport

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def _set_state(self, new: ConnectionState, detail: str = "") -> None:
        old = self.session.state
        self.session.state = new
        self.session.history.append(new)
        log.debug(f"Connection state {old.value} -> {new.value} {detail}".rstrip())

    def _halt(self, code: int, reason: str) -> None:
        self._cancel_watchdog()
        self._set_state(ConnectionState.DISCONNECTED, reason)
        if self.exit_code is None:
            self.exit_code = code
        lifecycle_log.info(f"HALT | code={code} | {reason}")
        self._stopped.set()

    # ── connect ──────────────────────────────────────────────────

    async def connect(self) -> None:
        """Build a new socket and wire it. Returns once the socket exists, not once it is open."""
        while not self.stopped:
            self.session.attempts += 1
            attempt = self.session.attempts
            self._set_state(ConnectionState.CONNECTING, f"attempt={attempt}")
            log.info(f"Connecting (attempt {attempt})...")
            lifecycle_log.info(f"CONNECT | attempt={attempt}")

            try:
                socket = await self._create_socket()
            except TransportSetupError as e:
                log.error(f"Transport setup failed: {e}")
                if await self._handle_failure(e.status_code, f"setup_error: {e}"):
                    continue
                return
            except ConfigurationError as e:
                log.error(f"Transport configuration error: {e}")
                self._halt(EXIT_FATAL, f"configuration: {e}")
                raise
            except Exception as e:
                log.exception(f"Unrecoverable error during transport setup: {e}")
                self._halt(EXIT_FATAL, f"setup_exception: {e!r}")
                return

            if self.stopped:
                # stop() raced the factory; the new socket is not wanted
                await self._close_quietly(socket)
                return
            self.session.generation += 1
            self.session.transport = socket
            self._wire(socket, self.session.generation)
            self._start_watchdog(self.session.generation)
            return

    async def _create_socket(self) -> TransportSocket:
        options = self.options()
        try:
            if self.connect_timeout:
                return await asyncio.wait_for(call_factory(self.factory, options), self.connect_timeout)
            return await call_factory(self.factory, options)
        except asyncio.TimeoutError as e:
            raise TransportSetupError(f"socket construction timed out after {self.connect_timeout}s") from e
        except (OSError, ConnectionError) as e:
            raise TransportSetupError(str(e) or type(e).__name__) from e

    def _wire(self, socket: TransportSocket, generation: int) -> None:
        async def on_connection_update(update: Any) -> None:
            if generation != self.session.generation:
                log.debug("Ignoring connection.update from a stale socket")
                return
            await self.handle_connection_update(update)

        socket.on(CONNECTION_UPDATE, on_connection_update)
        for name in DISPATCHED_EVENTS:
            socket.on(name, self._forwarder(socket, name, generation))

    def _forwarder(self, socket: TransportSocket, name: str, generation: int):
        async def forward(payload: Any) -> None:
            if generation != self.session.generation:
                log.debug(f"Dropping {name} from a stale socket")
                return
            for event in from_transport(name, payload):
                await self.dispatcher.dispatch(event, socket)

        return forward

    # ── connection.update ────────────────────────────────────────

    async def handle_connection_update(self, update: Any) -> None:
        get = update.get if isinstance(update, Mapping) else (lambda k, d=None: getattr(update, k, d))
        qr = get("qr")
        if qr:
            log.warning("Pairing required: scan the QR code below with the phone app")
            log.warning(f"QR: {qr}")
            lifecycle_log.info("PAIRING | QR_ISSUED")

        connection = get("connection")
        if connection == "open":
            await self._on_open()
        elif connection == "close":
            await self._on_close(extract_status_code(update))
        elif connection == "connecting":
            if self.session.state != ConnectionState.CONNECTING:
                self._set_state(ConnectionState.CONNECTING)

    async def _on_open(self) -> None:
        self._cancel_watchdog()
        if self.session.state == ConnectionState.OPEN:
            return
        self._set_state(ConnectionState.OPEN)
        self.session.opened_count += 1
        self.session.attempts = 0
        self.session.opened_at = datetime.now()
        me = getattr(self.session.transport, "user_jid", None)
        log.info(f"Connected as {me or 'unknown user'}")
        lifecycle_log.info(f"OPEN | count={self.session.opened_count} | user={me}")
        perf.incr("connection_open", count=1, opened=self.session.opened_count)

        if self.session.startup_done:
            return
        # Set before awaiting so a reconnect racing the actions cannot rerun them
        self.session.startup_done = True
        for action in self.startup_actions:
            name = getattr(action, "__name__", repr(action))
            try:
                await action(self.session.transport)
            except Exception as e:
                log.error(f"Startup action {name} failed: {e!r}")
                perf.error("startup_action", action=name)

    async def _on_close(self, status_code: Optional[int]) -> None:
        self._cancel_watchdog()
        if await self._handle_failure(status_code, "closed"):
            await self.connect()

    async def _handle_failure(self, status_code: Optional[int], context: str) -> bool:
        """Classify a closure or setup failure. True when the caller should connect again."""
        closure = self.classifier.classify(status_code)
        reason = self.classifier.describe(status_code)
        self.session.last_status_code = status_code
        self.session.last_reason = reason
        log.warning(f"Connection {context}, status={status_code} ({reason}), {closure.value}")
        lifecycle_log.info(f"CLOSE | {status_code} | {reason} | {closure.value.upper()} | {context}")

        if closure is Closure.TERMINAL:
            self._set_state(ConnectionState.CLOSED_TERMINAL, reason)
            await self._close_socket()
            log.error(
                f"Logged out. Delete {self.credentials_path or 'the local credentials'} (or run `relaybot reset-session`) to pair again."
                if status_code == LOGGED_OUT
                else f"Session ended by the service ({reason}); not reconnecting."
            )
            self._halt(EXIT_FATAL, reason)
            return False

        self._set_state(ConnectionState.CLOSED_RECOVERABLE, reason)
        await self._close_socket()
        return await self._backoff(reason)

    async def _backoff(self, reason: str) -> bool:
        attempt = self.session.attempts + 1
        if self.policy.exhausted(attempt):
            log.error(f"Giving up after {self.session.attempts} connection attempt(s)")
            self._halt(EXIT_FATAL, f"retry_limit: {reason}")
            return False
        delay = self.policy.delay(attempt)
        perf.incr("reconnects", reason=reason, attempt=attempt)
        if delay:
            log.info(f"Reconnecting in {delay:.1f}s")
            await self._sleep(delay)
        return not self.stopped

    async def _close_socket(self) -> None:
        socket = self.session.transport
        if socket is None:
            return
        # Bump the generation so late events from the old socket are dropped
        self.session.generation += 1
        self.session.transport = None
        await self._close_quietly(socket)

    async def _close_quietly(self, socket: TransportSocket) -> None:
        close = getattr(socket, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            log.debug(f"Ignoring error while closing socket: {e!r}")

    # ── watchdog ─────────────────────────────────────────────────

    def _start_watchdog(self, generation: int) -> None:
        if not self.connect_timeout:
            return
        self._cancel_watchdog()
        self._watchdog = asyncio.create_task(self._watch_open(generation, self.connect_timeout))

    def _cancel_watchdog(self) -> None:
        task = self._watchdog
        self._watchdog = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _watch_open(self, generation: int, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if generation != self.session.generation or self.session.state == ConnectionState.OPEN:
            return
        self._watchdog = None
        log.warning(f"Socket did not open within {timeout:.0f}s")
        if await self._handle_failure(None, "open_timeout"):
            await self.connect()

    # ── run / stop ───────────────────────────────────────────────

    async def wait_stopped(self) -> int:
        await self._stopped.wait()
        return self.exit_code if self.exit_code is not None else EXIT_OK

    async def stop(self, reason: str = "shutdown") -> None:
        """Stop without reconnecting (signal handling / tests)."""
        if self.stopped:
            return
        log.info(f"Stopping connection manager ({reason})")
        self._cancel_watchdog()
        await self._close_socket()
        self._halt(EXIT_OK, reason)

    def snapshot(self) -> dict:
        s = self.session
        return {
            "state": s.state.value,
            "attempts": s.attempts,
            "opened_count": s.opened_count,
            "last_status_code": s.last_status_code,
            "last_reason": s.last_reason,
            "opened_at": s.opened_at.isoformat() if s.opened_at else None,
            "user": getattr(s.transport, "user_jid", None),
        }
