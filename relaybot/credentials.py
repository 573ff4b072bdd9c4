"""
Local credential store.

The credential blob is opaque to relaybot: it is whatever the transport hands
over in `creds.update`. Writes go through a temp file + rename under an
asyncio lock, so readers never see a torn blob and a slow bootstrap write
cannot interleave with a `creds.update` write.
"""
from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
from pathlib import Path
from typing import Any

from relaybot import perf

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")


def encode_blob(blob: Any) -> bytes:
    """Normalize a credential payload to bytes.

    Transports emit bytes, text, or a JSON-serialisable mapping.
    """
    if isinstance(blob, (bytes, bytearray, memoryview)):
        return bytes(blob)
    if isinstance(blob, str):
        return blob.encode("utf-8")
    return json.dumps(blob, default=str).encode("utf-8")


class CredentialStore:
    """Reads and atomically writes the credential blob at a fixed path."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = asyncio.Lock()
        self.write_count = 0

    def exists(self) -> bool:
        try:
            return self.path.is_file() and self.path.stat().st_size > 0
        except OSError:
            return False

    def load(self) -> bytes:
        return self.path.read_bytes()

    async def save(self, blob: Any) -> None:
        data = encode_blob(blob)
        async with self._lock:
            await asyncio.to_thread(self._write, data)
            self.write_count += 1
        perf.incr("creds_writes", bytes=len(data))

    def _write(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def clear(self) -> bool:
        """Delete the blob. Returns True if something was removed."""
        if not self.path.exists():
            return False
        self.path.unlink()
        lifecycle_log.info(f"CREDS | CLEARED | {self.path}")
        log.info(f"Removed credentials at {self.path}")
        return True
