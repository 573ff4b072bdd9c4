"""
Built-in handlers.

Conditional message behaviors (registered into the HandlerRegistry, in this
order):

    auto_react          react to incoming chat messages with a random emoji
    auto_status_seen    mark status updates as read
    auto_status_react   react to status updates
    auto_status_reply   reply privately to the status author

Each is gated by its own configuration flag inside its predicate, so the
registry always lists all four and the flags decide what acts.

Dedicated handlers for non-message events:

    CallHandler                 logs calls; optionally answers offers with a text
    GroupParticipantsHandler    optional welcome / goodbye messages

And the private-mode gate for the command chain.
"""
from __future__ import annotations

import logging
import random
from typing import Any, Callable, Mapping, Optional

from relaybot.common import STATUS_BROADCAST_JID, jid_user, normalize_jid, same_user
from relaybot.config import Settings
from relaybot.events import Call, GroupParticipantsUpdate, Message, thaw
from relaybot.registry import BEHAVIOR, HandlerRegistry

log = logging.getLogger(__name__)


def not_from_self(message: Message) -> bool:
    return not message.from_me


def is_status(message: Message) -> bool:
    return message.is_status


def is_chat(message: Message) -> bool:
    return not message.is_status


def _react_content(emoji: str, message: Message) -> dict:
    return {"react": {"text": emoji, "key": message.key_dict()}}


def register_builtin_behaviors(
    registry: HandlerRegistry,
    settings: Settings,
    choice: Callable[[list], Any] = random.choice,
) -> list[str]:
    """Register the four conditional behaviors. Returns their names in order."""

    async def auto_react(message: Message, transport: Any) -> None:
        emoji = choice(settings.react_emojis)
        await transport.send_message(message.chat, _react_content(emoji, message))
        log.info(f"Reacted {emoji} to {message.id} in {message.chat}")

    async def auto_status_seen(message: Message, transport: Any) -> None:
        await transport.read_messages([message.key_dict()])
        log.info(f"Marked status {message.id} from {jid_user(message.sender)} as seen")

    async def auto_status_react(message: Message, transport: Any) -> None:
        emoji = choice(settings.status_react_emojis)
        audience = [message.sender]
        me = getattr(transport, "user_jid", None)
        if me:
            audience.append(normalize_jid(me))
        await transport.send_message(
            STATUS_BROADCAST_JID,
            _react_content(emoji, message),
            status_jid_list=audience,
        )
        log.info(f"Reacted {emoji} to status {message.id} from {jid_user(message.sender)}")

    async def auto_status_reply(message: Message, transport: Any) -> None:
        target = normalize_jid(message.sender)
        await transport.send_message(target, {"text": settings.status_reply_text}, quoted=thaw(message.raw))
        log.info(f"Replied to status {message.id} from {jid_user(target)}")

    registry.register(
        "auto_react",
        auto_react,
        predicate=lambda m: settings.auto_react and not_from_self(m) and is_chat(m),
        kind=BEHAVIOR,
    )
    registry.register(
        "auto_status_seen",
        auto_status_seen,
        predicate=lambda m: settings.auto_status_seen and not_from_self(m) and is_status(m),
        kind=BEHAVIOR,
    )
    registry.register(
        "auto_status_react",
        auto_status_react,
        predicate=lambda m: settings.auto_status_react and not_from_self(m) and is_status(m),
        kind=BEHAVIOR,
    )
    registry.register(
        "auto_status_reply",
        auto_status_reply,
        predicate=lambda m: settings.auto_status_reply and not_from_self(m) and is_status(m),
        kind=BEHAVIOR,
    )
    return ["auto_react", "auto_status_seen", "auto_status_react", "auto_status_reply"]


def command_gate(settings: Settings, self_jid: Callable[[], Optional[str]] = lambda: None):
    """Predicate for the command chain.

    Public mode lets everyone through. Private mode only admits messages sent
    by the bot's own account or by OWNER_NUMBER.
    """

    def gate(message: Message) -> bool:
        if settings.mode == "public":
            return True
        if message.from_me:
            return True
        sender = message.sender
        if settings.owner_jid and same_user(sender, settings.owner_jid):
            return True
        return same_user(sender, self_jid())

    return gate


class CallHandler:
    """Dedicated handler for call events."""

    name = "call"

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(self, event: Call, transport: Any) -> None:
        kind = "video" if event.is_video else "voice"
        log.info(f"Incoming {kind} call from {jid_user(event.caller)} status={event.status or '?'}")
        if not self.settings.anti_call or event.status != "offer" or not event.caller:
            return
        await transport.send_message(normalize_jid(event.caller), {"text": self.settings.anti_call_text})
        log.info(f"Sent call notice to {jid_user(event.caller)}")


class GroupParticipantsHandler:
    """Dedicated handler for group participant changes."""

    name = "group_participants"

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(self, event: GroupParticipantsUpdate, transport: Any) -> None:
        log.info(f"Group {event.group}: {event.action} {len(event.participants)} participant(s)")
        if not self.settings.welcome:
            return
        if event.action == "add":
            template = self.settings.welcome_text
        elif event.action == "remove":
            template = self.settings.goodbye_text
        else:
            return

        for participant in event.participants:
            if isinstance(participant, Mapping):
                jid = participant.get("id", "")
            else:
                jid = str(participant)
            text = template.format(user=f"@{jid_user(jid)}", group=event.group)
            await transport.send_message(event.group, {"text": text, "mentions": [jid]})
