"""
Liveness HTTP endpoint.

GET /        plain "Hello World! Bot is running." (hosting platforms probe this)
GET /health  JSON snapshot of the connection manager

Served by uvicorn inside the bot's own event loop so the endpoint reflects the
live ConnectionManager without any IPC.
"""
from __future__ import annotations

import contextlib
import logging
from datetime import datetime
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from relaybot.lifecycle import ConnectionManager, ConnectionState

log = logging.getLogger(__name__)

ROOT_TEXT = "Hello World! Bot is running."


def create_app(
    connection: Optional[ConnectionManager] = None,
    plugin_count: Callable[[], int] = lambda: 0,
) -> FastAPI:
    app = FastAPI(title="relaybot", docs_url=None, redoc_url=None, openapi_url=None)
    started_at = datetime.now()

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return ROOT_TEXT

    @app.get("/health")
    async def health():
        """Health check for monitoring"""
        snapshot = connection.snapshot() if connection is not None else {"state": ConnectionState.DISCONNECTED.value}
        return {
            "status": "ok" if snapshot["state"] == ConnectionState.OPEN.value else "degraded",
            "started_at": started_at.isoformat(),
            "plugins": plugin_count(),
            **snapshot,
        }

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn without its own signal handling; SIGINT/SIGTERM belong to the bot."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HealthServer:
    """uvicorn server run as a task on the current loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 9090):
        self.host = host
        self.port = port
        config = uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
        self.server = _EmbeddedServer(config)

    async def serve(self) -> None:
        log.info(f"Health endpoint listening on http://{self.host}:{self.port}")
        try:
            await self.server.serve()
        except (OSError, SystemExit) as e:
            # Port in use and friends; the bot keeps running without the endpoint
            log.error(f"Health endpoint failed to start on port {self.port}: {e!r}")

    def shutdown(self) -> None:
        self.server.should_exit = True
