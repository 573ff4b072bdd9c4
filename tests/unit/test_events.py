"""Unit tests for inbound event translation."""
import pytest

from relaybot.events import (
    Call,
    CredsUpdate,
    GroupParticipantsUpdate,
    Message,
    from_transport,
    thaw,
)


def upsert(*messages, kind="notify"):
    return {"type": kind, "messages": list(messages)}


class TestFromTransport:
    def test_upsert_yields_one_message_per_entry(self):
        events = from_transport("messages.upsert", upsert(
            {"key": {"remoteJid": "1@s.whatsapp.net", "id": "A"}, "message": {"conversation": "a"}},
            {"key": {"remoteJid": "2@s.whatsapp.net", "id": "B"}, "message": {"conversation": "b"}},
            kind="append",
        ))

        assert [type(e) for e in events] == [Message, Message]
        assert [e.id for e in events] == ["A", "B"]
        assert events[0].upsert_type == "append"
        assert not events[0].is_live

    def test_upsert_without_type_is_live(self):
        event = from_transport("messages.upsert", {"messages": [{"key": {"id": "A"}}]})[0]
        assert event.upsert_type == "notify"
        assert event.is_live

    def test_empty_upsert(self):
        assert from_transport("messages.upsert", {"messages": []}) == []
        assert from_transport("messages.upsert", {}) == []

    def test_call_list_and_single(self):
        assert len(from_transport("call", [{"id": "1"}, {"id": "2"}])) == 2
        assert isinstance(from_transport("call", {"id": "1"})[0], Call)

    def test_group_update(self):
        event = from_transport("group-participants.update", {"id": "9@g.us", "participants": ["1@s.whatsapp.net"], "action": "add"})[0]
        assert isinstance(event, GroupParticipantsUpdate)
        assert event.group == "9@g.us"
        assert event.participants == ("1@s.whatsapp.net",)
        assert event.action == "add"

    def test_creds_update_keeps_blob(self):
        blob = {"noiseKey": "x"}
        event = from_transport("creds.update", blob)[0]
        assert isinstance(event, CredsUpdate)
        assert event.blob is blob

    def test_unknown_event(self):
        assert from_transport("presence.update", {"id": "x"}) == []


class TestMessage:
    def make(self, **raw):
        return from_transport("messages.upsert", upsert(raw))[0]

    def test_fields(self):
        m = self.make(
            key={"remoteJid": "123@g.us", "fromMe": False, "id": "X1", "participant": "5@s.whatsapp.net"},
            pushName="Ana",
            message={"extendedTextMessage": {"text": "hi all"}},
        )
        assert m.chat == "123@g.us"
        assert m.is_group
        assert not m.is_status
        assert m.sender == "5@s.whatsapp.net"
        assert m.push_name == "Ana"
        assert m.text == "hi all"
        assert m.has_payload

    def test_direct_chat_sender_is_chat(self):
        m = self.make(key={"remoteJid": "7@s.whatsapp.net", "id": "1"}, message={"conversation": "yo"})
        assert m.sender == "7@s.whatsapp.net"
        assert not m.from_me

    def test_status(self):
        m = self.make(key={"remoteJid": "status@broadcast", "participant": "7@s.whatsapp.net", "id": "S"}, message={"imageMessage": {"caption": "sunset"}})
        assert m.is_status
        assert m.text == "sunset"

    def test_ephemeral_text(self):
        m = self.make(key={"remoteJid": "7@s.whatsapp.net"}, message={"ephemeralMessage": {"message": {"conversation": "secret"}}})
        assert m.text == "secret"

    def test_no_payload(self):
        m = self.make(key={"remoteJid": "7@s.whatsapp.net", "id": "1"})
        assert not m.has_payload
        assert m.text == ""

    def test_raw_is_read_only(self):
        m = self.make(key={"remoteJid": "7@s.whatsapp.net", "id": "1"}, message={"conversation": "x"})
        with pytest.raises(TypeError):
            m.raw["key"]["id"] = "changed"
        with pytest.raises(AttributeError):
            m.upsert_type = "append"

    def test_thaw_gives_plain_copy(self):
        m = self.make(key={"remoteJid": "7@s.whatsapp.net", "id": "1"}, message={"conversation": "x"}, labels=["a"])
        plain = thaw(m.raw)
        assert plain == {"key": {"remoteJid": "7@s.whatsapp.net", "id": "1"}, "message": {"conversation": "x"}, "labels": ["a"]}
        plain["key"]["id"] = "mutable"
        assert m.id == "1"


class TestCall:
    def test_fields(self):
        call = Call(raw={"from": "7@s.whatsapp.net", "id": "C", "status": "offer", "isVideo": True})
        assert (call.caller, call.call_id, call.status, call.is_video) == ("7@s.whatsapp.net", "C", "offer", True)
