"""Tests for the wire protocol codec."""

import json

import pytest

from booth_client.errors import ProtocolError
from booth_client.protocol import MessageCodec, ServerEvent


@pytest.fixture
def codec():
    return MessageCodec()


class TestDecode:
    def test_decode_typed_frame(self, codec):
        event = codec.decode('{"type":"pong"}')
        assert event == ServerEvent(type="pong", payload={})

    def test_payload_excludes_type(self, codec):
        event = codec.decode('{"type":"auth_failed","message":"expired"}')
        assert event.type == "auth_failed"
        assert event.payload == {"message": "expired"}

    def test_decode_bytes(self, codec):
        event = codec.decode(b'{"type":"authenticated"}')
        assert event.type == "authenticated"

    def test_legacy_caster_event_is_aliased(self, codec):
        event = codec.decode(
            '{"type":"session.casters.updated","version":3,"casters":[]}'
        )
        assert event.type == "roster.updated"
        assert event.payload["version"] == 3

    def test_unknown_type_still_decodes(self, codec):
        # Routing decides what to do with unknown types, not the codec
        event = codec.decode('{"type":"brand_new"}')
        assert event.type == "brand_new"

    def test_invalid_json_raises(self, codec):
        with pytest.raises(ProtocolError):
            codec.decode("not json")

    def test_non_object_raises(self, codec):
        with pytest.raises(ProtocolError):
            codec.decode("[1, 2, 3]")

    def test_missing_type_raises(self, codec):
        with pytest.raises(ProtocolError):
            codec.decode('{"message":"hi"}')


class TestEncode:
    def test_authenticate(self, codec):
        frame = json.loads(codec.authenticate("jwt-1"))
        assert frame == {"type": "authenticate", "credential": "jwt-1"}

    def test_join_event(self, codec):
        frame = json.loads(codec.join_event("E"))
        assert frame == {"type": "join_event", "channelId": "E"}

    def test_send_message_without_meta(self, codec):
        frame = json.loads(codec.send_message("hi", "E"))
        assert frame == {"type": "send_message", "text": "hi", "channelId": "E"}

    def test_send_message_with_meta(self, codec):
        frame = json.loads(codec.send_message("hi", "E", {"casterId": "c1"}))
        assert frame["meta"] == {"casterId": "c1"}

    def test_ping(self, codec):
        assert json.loads(codec.ping()) == {"type": "ping"}
