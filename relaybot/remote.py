"""
Remote session retrieval.

A session locator has the form `prefix~archiveId*decryptionKey`. The prefix is a
free-form label (bots usually stamp their name there); archiveId and
decryptionKey identify a public MEGA file holding the credential blob.

MEGA public files are AES-128-CTR encrypted. The link key is 32 bytes of
URL-safe base64: the AES key is the XOR of its two 16-byte halves and the CTR
nonce is its 5th and 6th 32-bit words.
"""
from __future__ import annotations

import base64
import binascii
import logging
import struct
from typing import Optional, Protocol

import requests
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import BaseModel, ConfigDict

from relaybot import perf
from relaybot.errors import ConfigurationError, FetchError

log = logging.getLogger(__name__)

PREFIX_DELIMITER = "~"
KEY_DELIMITER = "*"

MEGA_API_URL = "https://g.api.mega.co.nz/cs"

# Documented MEGA API error codes that show up for public file lookups
MEGA_ERRORS = {
    -2: "bad arguments",
    -3: "request failed, retry",
    -4: "rate limited",
    -9: "file not found",
    -11: "access denied",
    -16: "file blocked",
    -17: "over quota",
    -18: "temporarily unavailable",
}


class SessionLocator(BaseModel):
    model_config = ConfigDict(frozen=True)

    archive_id: str
    decryption_key: str
    prefix: str = ""

    def __str__(self) -> str:
        # Never log the key
        return f"{self.prefix}{PREFIX_DELIMITER}{self.archive_id}{KEY_DELIMITER}***"


def parse_locator(value: Optional[str]) -> SessionLocator:
    """Parse `prefix~archiveId*decryptionKey`.

    Raises ConfigurationError for anything that does not have both a non-empty
    archive id and a non-empty key.
    """
    if value is None or not value.strip():
        raise ConfigurationError("SESSION_LOCATOR is empty")

    raw = value.strip()
    if PREFIX_DELIMITER not in raw:
        raise ConfigurationError(
            f"SESSION_LOCATOR must look like 'prefix{PREFIX_DELIMITER}archiveId{KEY_DELIMITER}key' "
            f"(missing '{PREFIX_DELIMITER}')"
        )
    prefix, body = raw.split(PREFIX_DELIMITER, 1)

    if body.count(KEY_DELIMITER) != 1:
        raise ConfigurationError(
            f"SESSION_LOCATOR must contain exactly one '{KEY_DELIMITER}' between archive id and key"
        )
    archive_id, key = (part.strip() for part in body.split(KEY_DELIMITER, 1))

    if not archive_id:
        raise ConfigurationError("SESSION_LOCATOR has an empty archive id")
    if not key:
        raise ConfigurationError("SESSION_LOCATOR has an empty decryption key")

    return SessionLocator(archive_id=archive_id, decryption_key=key, prefix=prefix.strip())


class SessionFetcher(Protocol):
    """Anything that can turn a locator into a credential blob."""

    def fetch(self, locator: SessionLocator) -> bytes:
        ...


def _b64url_decode(value: str) -> bytes:
    value = value.replace("-", "+").replace("_", "/").replace(",", "")
    value += "=" * (-len(value) % 4)
    return base64.b64decode(value, validate=True)


def derive_file_key(decryption_key: str) -> tuple[bytes, bytes]:
    """Return (aes_key, ctr_iv) for a MEGA file link key.

    Raises FetchError if the key is not 32 bytes of URL-safe base64.
    """
    try:
        raw = _b64url_decode(decryption_key)
    except (binascii.Error, ValueError) as e:
        raise FetchError(f"decryption key is not valid base64: {e}") from e
    if len(raw) != 32:
        raise FetchError(f"decryption key must decode to 32 bytes, got {len(raw)}")

    k = struct.unpack(">8I", raw)
    aes_key = struct.pack(">4I", k[0] ^ k[4], k[1] ^ k[5], k[2] ^ k[6], k[3] ^ k[7])
    iv = struct.pack(">4I", k[4], k[5], 0, 0)
    return aes_key, iv


def decrypt(payload: bytes, aes_key: bytes, iv: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(aes_key), modes.CTR(iv)).decryptor()
    return decryptor.update(payload) + decryptor.finalize()


class MegaSessionFetcher:
    """Downloads and decrypts a credential blob from a public MEGA file."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._http = session or requests.Session()
        self._seq = 0

    def _api(self, payload: list) -> dict:
        self._seq += 1
        try:
            resp = self._http.post(
                MEGA_API_URL,
                params={"id": self._seq},
                json=payload,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"archive API request failed: {e}") from e

        result = body[0] if isinstance(body, list) and body else body
        if isinstance(result, int):
            reason = MEGA_ERRORS.get(result, "unknown error")
            raise FetchError(f"archive API error {result}: {reason}")
        if not isinstance(result, dict) or "g" not in result:
            raise FetchError("archive API returned no download URL")
        return result

    @perf.timed_fn("session_fetch_ms")
    def fetch(self, locator: SessionLocator) -> bytes:
        aes_key, iv = derive_file_key(locator.decryption_key)

        info = self._api([{"a": "g", "g": 1, "p": locator.archive_id}])
        expected_size = info.get("s")
        log.info(f"Downloading session archive {locator.archive_id} ({expected_size} bytes)")

        try:
            resp = self._http.get(info["g"], timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(f"archive download failed: {e}") from e

        payload = resp.content
        if expected_size is not None and len(payload) != int(expected_size):
            raise FetchError(f"archive size mismatch: expected {expected_size}, got {len(payload)}")

        return decrypt(payload, aes_key, iv)
