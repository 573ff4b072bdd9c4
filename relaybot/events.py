"""
Inbound events.

The transport emits loosely-shaped payloads (dicts following the messaging
service's own field names). They are wrapped here into immutable event objects
so handlers share one read-only view and never mutate what another handler
will see.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from relaybot.common import is_group_jid, is_status_jid

# Transport event names
CONNECTION_UPDATE = "connection.update"
CREDS_UPDATE = "creds.update"
MESSAGES_UPSERT = "messages.upsert"
CALL = "call"
GROUP_PARTICIPANTS_UPDATE = "group-participants.update"

DISPATCHED_EVENTS = (CREDS_UPDATE, MESSAGES_UPSERT, CALL, GROUP_PARTICIPANTS_UPDATE)

# messages.upsert batch type for messages arriving in real time
LIVE_UPSERT = "notify"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Plain dict/list copy of a frozen payload, for handing back to the transport."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def _get(obj: Any, *names: str, default: Any = None) -> Any:
    """Read the first present key/attribute among names."""
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return default


@dataclass(frozen=True)
class Message:
    """One entry of a messages.upsert batch."""

    raw: Mapping[str, Any]
    upsert_type: str = LIVE_UPSERT

    kind = "message"

    @property
    def key(self) -> Mapping[str, Any]:
        return _get(self.raw, "key", default=MappingProxyType({}))

    def key_dict(self) -> dict:
        return thaw(self.key)

    @property
    def chat(self) -> str:
        return _get(self.key, "remoteJid", "remote_jid", default="") or ""

    @property
    def from_me(self) -> bool:
        return bool(_get(self.key, "fromMe", "from_me", default=False))

    @property
    def id(self) -> str:
        return _get(self.key, "id", default="") or ""

    @property
    def participant(self) -> Optional[str]:
        return _get(self.key, "participant", default=None) or _get(self.raw, "participant", default=None)

    @property
    def sender(self) -> str:
        """Author JID: the participant in groups and status, else the chat itself."""
        return self.participant or self.chat

    @property
    def push_name(self) -> str:
        return _get(self.raw, "pushName", "push_name", default="") or ""

    @property
    def content(self) -> Optional[Mapping[str, Any]]:
        return _get(self.raw, "message", default=None)

    @property
    def has_payload(self) -> bool:
        return bool(self.content)

    @property
    def is_live(self) -> bool:
        """False for history-sync and other backfilled batches (type "append")."""
        return self.upsert_type == LIVE_UPSERT

    @property
    def is_status(self) -> bool:
        return is_status_jid(self.chat)

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.chat)

    @property
    def text(self) -> str:
        """Best-effort plain text of the message (body or media caption)."""
        content = self.content or {}
        for name in ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2"):
            inner = _get(content, name)
            if inner is not None:
                content = _get(inner, "message", default=content) or content
        text = _get(content, "conversation")
        if text:
            return text
        for name in ("extendedTextMessage",):
            inner = _get(content, name)
            if inner is not None and _get(inner, "text"):
                return _get(inner, "text")
        for name in ("imageMessage", "videoMessage", "documentMessage"):
            inner = _get(content, name)
            if inner is not None and _get(inner, "caption"):
                return _get(inner, "caption")
        return ""


@dataclass(frozen=True)
class Call:
    raw: Mapping[str, Any]

    kind = "call"

    @property
    def caller(self) -> str:
        return _get(self.raw, "from", "chatId", "chat_id", default="") or ""

    @property
    def call_id(self) -> str:
        return _get(self.raw, "id", default="") or ""

    @property
    def status(self) -> str:
        return _get(self.raw, "status", default="") or ""

    @property
    def is_video(self) -> bool:
        return bool(_get(self.raw, "isVideo", "is_video", default=False))


@dataclass(frozen=True)
class GroupParticipantsUpdate:
    raw: Mapping[str, Any]

    kind = "group_participants"

    @property
    def group(self) -> str:
        return _get(self.raw, "id", default="") or ""

    @property
    def participants(self) -> tuple:
        return tuple(_get(self.raw, "participants", default=()) or ())

    @property
    def action(self) -> str:
        return _get(self.raw, "action", default="") or ""


@dataclass(frozen=True)
class CredsUpdate:
    blob: Any

    kind = "creds_update"


InboundEvent = Union[Message, Call, GroupParticipantsUpdate, CredsUpdate]


def from_transport(name: str, payload: Any) -> list[InboundEvent]:
    """Translate one transport emission into zero or more inbound events.

    A messages.upsert batch yields one Message per entry; a call emission may
    carry a list of calls. Unknown event names yield nothing.
    """
    if name == CREDS_UPDATE:
        return [CredsUpdate(blob=payload)]

    if name == MESSAGES_UPSERT:
        messages = _get(payload, "messages", default=None) or ()
        upsert_type = _get(payload, "type", default=LIVE_UPSERT) or LIVE_UPSERT
        return [Message(raw=_freeze(m), upsert_type=upsert_type) for m in messages if m]

    if name == CALL:
        calls = payload if isinstance(payload, (list, tuple)) else [payload]
        return [Call(raw=_freeze(c)) for c in calls if c]

    if name == GROUP_PARTICIPANTS_UPDATE:
        return [GroupParticipantsUpdate(raw=_freeze(payload or {}))]

    return []
