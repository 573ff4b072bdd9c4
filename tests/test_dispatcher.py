"""
Tests for event dispatch and the built-in behaviors.

Covers:
- Handler isolation (one failure never blocks the rest)
- Commands before behaviors, registration order preserved
- Messages without payload and history-sync batches are skipped
- Credential updates are persisted
- Call and group-participant routing
- Status behaviors honour their individual flags
- Private mode gates commands but not behaviors
"""
from unittest.mock import AsyncMock, patch

import pytest

from relaybot.behaviors import (
    CallHandler,
    GroupParticipantsHandler,
    command_gate,
    register_builtin_behaviors,
)
from relaybot.common import STATUS_BROADCAST_JID
from relaybot.dispatcher import EventDispatcher
from relaybot.events import Call, CredsUpdate, GroupParticipantsUpdate, from_transport
from relaybot.registry import BEHAVIOR, COMMAND


def recorder(calls, name, error=None):
    async def action(message, transport):
        calls.append(name)
        if error is not None:
            raise error

    return action


@pytest.mark.asyncio
class TestHandlerIsolation:
    async def test_failing_handler_does_not_stop_chain(self, dispatcher, registry, transport, message):
        calls = []
        registry.register("first", recorder(calls, "first"), kind=COMMAND)
        registry.register("second", recorder(calls, "second", RuntimeError("boom")), kind=COMMAND)
        registry.register("third", recorder(calls, "third"), kind=COMMAND)

        report = await dispatcher.dispatch(message(), transport)

        assert calls == ["first", "second", "third"]
        assert report.invoked == ["first", "second", "third"]
        assert report.failed == ["second"]
        assert not report.ok

    async def test_failing_predicate_is_isolated(self, dispatcher, registry, transport, message):
        calls = []
        registry.register("picky", recorder(calls, "picky"), predicate=lambda m: 1 / 0)
        registry.register("after", recorder(calls, "after"))

        report = await dispatcher.dispatch(message(), transport)

        assert calls == ["after"]
        assert report.failed == ["picky"]

    async def test_failure_does_not_affect_next_event(self, dispatcher, registry, transport, message):
        calls = []
        registry.register("flaky", recorder(calls, "flaky", ValueError("bad")))

        await dispatcher.dispatch(message(msg_id="1"), transport)
        await dispatcher.dispatch(message(msg_id="2"), transport)

        assert calls == ["flaky", "flaky"]
        assert dispatcher.dispatched == 2

    async def test_commands_run_before_behaviors(self, dispatcher, registry, transport, message):
        calls = []
        registry.register("behavior", recorder(calls, "behavior"), kind=BEHAVIOR)
        registry.register("command", recorder(calls, "command"), kind=COMMAND)

        await dispatcher.dispatch(message(), transport)

        assert calls == ["command", "behavior"]

    async def test_sync_handlers_are_supported(self, dispatcher, registry, transport, message):
        seen = []
        registry.register("sync", lambda m, t: seen.append(m.id))

        await dispatcher.dispatch(message(msg_id="ABC"), transport)

        assert seen == ["ABC"]

    async def test_message_without_payload_is_skipped(self, dispatcher, registry, transport, message):
        calls = []
        registry.register("any", recorder(calls, "any"))

        report = await dispatcher.dispatch(message(text=None), transport)

        assert report.skipped
        assert calls == []

    async def test_history_sync_batch_reaches_no_handler(self, make_settings, dispatcher, registry, transport):
        calls = []
        registry.register("cmd", recorder(calls, "cmd"), kind=COMMAND)
        register_builtin_behaviors(registry, make_settings(auto_react=True, auto_status_seen=True, auto_status_reply=True))
        events = from_transport("messages.upsert", {"type": "append", "messages": [
            {"key": {"remoteJid": "15550000077@s.whatsapp.net", "id": "OLD1"}, "message": {"conversation": "old"}},
            {"key": {"remoteJid": STATUS_BROADCAST_JID, "participant": "15550000077@s.whatsapp.net", "id": "OLD2"},
             "message": {"conversation": "old status"}},
        ]})

        reports = [await dispatcher.dispatch(event, transport) for event in events]

        assert all(r.skipped and r.invoked == [] for r in reports)
        assert calls == []
        assert transport.sent == []
        assert transport.read == []

    async def test_live_batch_is_dispatched(self, dispatcher, registry, transport):
        calls = []
        registry.register("any", recorder(calls, "any"))
        [event] = from_transport("messages.upsert", {"type": "notify", "messages": [
            {"key": {"remoteJid": "15550000077@s.whatsapp.net", "id": "NEW1"}, "message": {"conversation": "hi"}},
        ]})

        await dispatcher.dispatch(event, transport)

        assert calls == ["any"]


@pytest.mark.asyncio
class TestCredsUpdate:
    async def test_creds_update_persists(self, dispatcher, store, transport):
        report = await dispatcher.dispatch(CredsUpdate(blob={"noiseKey": "abc"}), transport)

        assert report.ok
        assert store.load() == b'{"noiseKey": "abc"}'

    async def test_creds_write_failure_is_reported(self, dispatcher, store, transport):
        with patch.object(store, "save", new=AsyncMock(side_effect=OSError("disk full"))):
            report = await dispatcher.dispatch(CredsUpdate(blob=b"x"), transport)

        assert report.failed == ["credential_store"]


@pytest.mark.asyncio
class TestSingleHandlers:
    async def test_call_routes_to_call_handler(self, registry, store, transport):
        handler = AsyncMock()
        handler.name = "call"
        dispatcher = EventDispatcher(registry, store, call_handler=handler)
        event = from_transport("call", [{"from": "15550000077@s.whatsapp.net", "id": "C1", "status": "offer"}])[0]

        report = await dispatcher.dispatch(event, transport)

        handler.handle.assert_awaited_once_with(event, transport)
        assert report.invoked == ["call"]

    async def test_missing_handler_skips(self, dispatcher, transport):
        report = await dispatcher.dispatch(Call(raw={"from": "x"}), transport)
        assert report.skipped

    async def test_group_handler_failure_is_isolated(self, registry, store, transport):
        handler = AsyncMock()
        handler.name = "group_participants"
        handler.handle.side_effect = RuntimeError("boom")
        dispatcher = EventDispatcher(registry, store, group_handler=handler)

        report = await dispatcher.dispatch(GroupParticipantsUpdate(raw={"id": "1@g.us"}), transport)

        assert report.failed == ["group_participants"]


@pytest.mark.asyncio
class TestStatusBehaviors:
    async def test_react_enabled_reply_disabled(self, make_settings, dispatcher, registry, transport, status):
        settings = make_settings(auto_status_react=True, auto_status_reply=False, status_react_emojis=["🔥"])
        register_builtin_behaviors(registry, settings)

        report = await dispatcher.dispatch(status(), transport)

        assert report.invoked == ["auto_status_react"]
        assert len(transport.sent) == 1
        jid, content, options = transport.sent[0]
        assert jid == STATUS_BROADCAST_JID
        assert content["react"]["text"] == "🔥"
        assert content["react"]["key"]["id"] == "STATUS1"
        assert options["status_jid_list"] == ["15550000077@s.whatsapp.net", "15550000001@s.whatsapp.net"]

    async def test_reply_only(self, make_settings, dispatcher, registry, transport, status):
        settings = make_settings(auto_status_reply=True, status_reply_text="Nice status")
        register_builtin_behaviors(registry, settings)

        await dispatcher.dispatch(status(author="15550000077:4@s.whatsapp.net"), transport)

        assert len(transport.sent) == 1
        jid, content, options = transport.sent[0]
        assert jid == "15550000077@s.whatsapp.net"
        assert content == {"text": "Nice status"}
        assert options["quoted"]["key"]["id"] == "STATUS1"
        assert isinstance(options["quoted"], dict)

    async def test_seen_marks_read(self, make_settings, dispatcher, registry, transport, status):
        register_builtin_behaviors(registry, make_settings(auto_status_seen=True))

        await dispatcher.dispatch(status(), transport)

        assert transport.read == [[{
            "remoteJid": STATUS_BROADCAST_JID,
            "fromMe": False,
            "id": "STATUS1",
            "participant": "15550000077@s.whatsapp.net",
        }]]
        assert transport.sent == []

    async def test_all_flags_off_nothing_happens(self, settings, dispatcher, registry, transport, status):
        register_builtin_behaviors(registry, settings)

        report = await dispatcher.dispatch(status(), transport)

        assert report.invoked == []
        assert transport.sent == [] and transport.read == []

    async def test_own_status_is_ignored(self, make_settings, dispatcher, registry, transport, status):
        settings = make_settings(auto_status_seen=True, auto_status_react=True, auto_status_reply=True)
        register_builtin_behaviors(registry, settings)

        await dispatcher.dispatch(status(from_me=True), transport)

        assert transport.sent == [] and transport.read == []

    async def test_status_send_failure_is_isolated(self, make_settings, dispatcher, registry, transport, status):
        settings = make_settings(auto_status_seen=True, auto_status_react=True)
        register_builtin_behaviors(registry, settings)
        transport.fail_send = True

        report = await dispatcher.dispatch(status(), transport)

        assert report.failed == ["auto_status_react"]
        assert len(transport.read) == 1


@pytest.mark.asyncio
class TestAutoReact:
    async def test_reacts_to_chat_messages(self, make_settings, dispatcher, registry, transport, message):
        register_builtin_behaviors(registry, make_settings(auto_react=True), choice=lambda options: options[0])

        await dispatcher.dispatch(message(msg_id="M9"), transport)

        jid, content, _ = transport.sent[0]
        assert jid == "15550000077@s.whatsapp.net"
        assert content == {"react": {"text": "👍", "key": {"remoteJid": jid, "fromMe": False, "id": "M9"}}}

    async def test_does_not_react_to_status_or_self(self, make_settings, dispatcher, registry, transport, message, status):
        register_builtin_behaviors(registry, make_settings(auto_react=True))

        await dispatcher.dispatch(status(), transport)
        await dispatcher.dispatch(message(from_me=True), transport)

        assert transport.sent == []



class TestBuiltinRegistration:
    def test_registration_order(self, registry, settings):
        names = register_builtin_behaviors(registry, settings)
        assert names == ["auto_react", "auto_status_seen", "auto_status_react", "auto_status_reply"]
        assert registry.names() == names


@pytest.mark.asyncio
class TestPrivateMode:
    def gate(self, make_settings, **kw):
        return command_gate(make_settings(mode="private", owner_number="+1 555 000 0009"), **kw)

    async def test_private_mode_blocks_strangers(self, make_settings, registry, store, transport, message):
        calls = []
        registry.register("cmd", recorder(calls, "cmd"), kind=COMMAND)
        registry.register("beh", recorder(calls, "beh"), kind=BEHAVIOR)
        dispatcher = EventDispatcher(registry, store, command_gate=self.gate(make_settings))

        await dispatcher.dispatch(message(), transport)

        assert calls == ["beh"]

    async def test_private_mode_admits_owner_and_self(self, make_settings, message):
        gate = self.gate(make_settings, self_jid=lambda: "15550000001:3@s.whatsapp.net")

        assert gate(message(chat="15550000009@s.whatsapp.net"))
        assert gate(message(chat="15550000001@s.whatsapp.net"))
        assert gate(message(from_me=True))
        assert gate(message(chat="123@g.us", participant="15550000009@s.whatsapp.net"))
        assert not gate(message(chat="123@g.us", participant="15550000077@s.whatsapp.net"))

    async def test_public_mode_admits_everyone(self, settings, message):
        assert command_gate(settings)(message())


@pytest.mark.asyncio
class TestCallHandler:
    async def test_anti_call_replies_to_offer(self, make_settings, transport):
        handler = CallHandler(make_settings(anti_call=True, anti_call_text="No calls"))

        await handler.handle(Call(raw={"from": "15550000077@s.whatsapp.net", "status": "offer"}), transport)

        assert transport.sent == [("15550000077@s.whatsapp.net", {"text": "No calls"}, {})]

    async def test_only_offers_are_answered(self, make_settings, transport):
        handler = CallHandler(make_settings(anti_call=True))

        await handler.handle(Call(raw={"from": "15550000077@s.whatsapp.net", "status": "terminate"}), transport)

        assert transport.sent == []

    async def test_disabled_by_default(self, settings, transport):
        await CallHandler(settings).handle(Call(raw={"from": "1@s.whatsapp.net", "status": "offer"}), transport)
        assert transport.sent == []


@pytest.mark.asyncio
class TestGroupParticipantsHandler:
    async def test_welcome_and_goodbye(self, make_settings, transport):
        handler = GroupParticipantsHandler(make_settings(welcome=True))

        await handler.handle(
            GroupParticipantsUpdate(raw={"id": "42@g.us", "action": "add", "participants": ["15550000077@s.whatsapp.net"]}),
            transport,
        )
        await handler.handle(
            GroupParticipantsUpdate(raw={"id": "42@g.us", "action": "remove", "participants": [{"id": "15550000088@s.whatsapp.net"}]}),
            transport,
        )

        assert transport.sent[0] == (
            "42@g.us",
            {"text": "Welcome @15550000077 to 42@g.us!", "mentions": ["15550000077@s.whatsapp.net"]},
            {},
        )
        assert transport.sent[1][1]["text"] == "Goodbye @15550000088."

    async def test_promote_is_silent(self, make_settings, transport):
        handler = GroupParticipantsHandler(make_settings(welcome=True))
        await handler.handle(GroupParticipantsUpdate(raw={"id": "42@g.us", "action": "promote", "participants": ["1@s.whatsapp.net"]}), transport)
        assert transport.sent == []

    async def test_disabled_by_default(self, settings, transport):
        await GroupParticipantsHandler(settings).handle(
            GroupParticipantsUpdate(raw={"id": "42@g.us", "action": "add", "participants": ["1@s.whatsapp.net"]}),
            transport,
        )
        assert transport.sent == []
