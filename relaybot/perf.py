"""
Runtime metrics as structured JSONL records.

Usage:
    from relaybot import perf

    # Dispatch latency for one inbound event
    perf.timing("dispatch_ms", 12.4, event="message")

    # Counters
    perf.incr("reconnects", reason="connection_lost")
    perf.incr("handler_errors", handler="auto_status_react")

    # Current values
    perf.gauge("plugins_loaded", 7)

    # Time a block or a coroutine
    with perf.timed("bootstrap_ms"):
        ...

    @perf.timed_fn("fetch_ms")
    async def fetch():
        ...

Records go to <home>/logs/perf-YYYY-MM-DD.jsonl. Metrics never raise.
"""

import inspect
import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any

from relaybot.common import DEFAULT_HOME_DIR, LOGS_DIRNAME

PERF_DIR = DEFAULT_HOME_DIR / LOGS_DIRNAME
SCHEMA_VERSION = 1
MAX_FILE_SIZE_MB = 50
COMPONENT = "relaybot"


def configure(perf_dir: Path) -> None:
    """Redirect metric files (called once by the daemon after config load)."""
    global PERF_DIR
    PERF_DIR = perf_dir


def _log_metric(metric: str, value: float, **labels: Any) -> None:
    try:
        PERF_DIR.mkdir(parents=True, exist_ok=True)
        path = PERF_DIR / f"perf-{datetime.now():%Y-%m-%d}.jsonl"

        if path.exists() and path.stat().st_size > MAX_FILE_SIZE_MB * 1024 * 1024:
            return

        entry = {
            "v": SCHEMA_VERSION,
            "ts": datetime.now().isoformat(),
            "metric": metric,
            "value": value,
            "component": COMPONENT,
            **labels,
        }
        with open(path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except Exception as e:
        print(f"[perf] failed to record {metric}: {e}", file=sys.stderr)


def timing(metric: str, ms: float, **labels: Any) -> None:
    """Record a duration in milliseconds."""
    _log_metric(metric, round(ms, 3), **labels)


def incr(metric: str, count: int = 1, **labels: Any) -> None:
    _log_metric(metric, count, **labels)


def gauge(metric: str, value: float, **labels: Any) -> None:
    _log_metric(metric, value, **labels)


@contextmanager
def timed(metric: str, **labels: Any):
    start = time.perf_counter()
    try:
        yield
    finally:
        timing(metric, (time.perf_counter() - start) * 1000, **labels)


def timed_fn(metric: str, **labels: Any):
    """Decorator version of timed(); works for plain and async functions."""

    def decorator(fn):
        if inspect.iscoroutinefunction(fn):

            @wraps(fn)
            async def async_wrapper(*args, **kwargs):
                with timed(metric, **labels):
                    return await fn(*args, **kwargs)

            return async_wrapper

        @wraps(fn)
        def sync_wrapper(*args, **kwargs):
            with timed(metric, **labels):
                return fn(*args, **kwargs)

        return sync_wrapper

    return decorator


def error(error_type: str, **labels: Any) -> None:
    """Record an error occurrence."""
    incr("error_count", error_type=error_type, **labels)
