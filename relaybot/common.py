"""
Shared paths and JID helpers used by the daemon, the behaviors and the CLI.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

# Paths
HOME = Path.home()
DEFAULT_HOME_DIR = HOME / "relaybot"
PROJECT_DIR = Path(__file__).parent.parent
SESSION_DIRNAME = "sessions"
CREDS_FILENAME = "creds.json"
PLUGINS_DIRNAME = "plugins"
LOGS_DIRNAME = "logs"

# Messaging service identifiers
STATUS_BROADCAST_JID = "status@broadcast"
USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"


def jid_user(jid: Optional[str]) -> str:
    """Return the user part of a JID, without device suffix.

    "15551234567:12@s.whatsapp.net" -> "15551234567"
    """
    if not jid:
        return ""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def normalize_jid(value: Optional[str]) -> str:
    """Normalize a phone number or JID to a bare user JID.

    Phone numbers are stripped to digits. Group and broadcast JIDs pass through.
    """
    if not value:
        return ""
    value = value.strip()
    if "@" in value:
        user, server = value.split("@", 1)
        if server != USER_SERVER:
            return value
        return f"{jid_user(value)}@{USER_SERVER}"
    digits = re.sub(r"\D", "", value)
    return f"{digits}@{USER_SERVER}" if digits else ""


def is_group_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(f"@{GROUP_SERVER}")


def is_status_jid(jid: Optional[str]) -> bool:
    return jid == STATUS_BROADCAST_JID


def same_user(a: Optional[str], b: Optional[str]) -> bool:
    """True if both JIDs refer to the same account (ignores device suffix)."""
    ua, ub = jid_user(a), jid_user(b)
    return bool(ua) and ua == ub
