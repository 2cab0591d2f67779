"""Tests for JSON wire frames."""

import json
from datetime import datetime

import pytest

from hubrelay.errors import ProtocolError
from hubrelay.protocol import Completion, Event, Invocation, decode_frame, encode_frame


class TestEncode:
    """Test frame serialization."""

    def test_invocation_shape(self):
        frame = Invocation(target="SendUserMessage", arguments=["sess-A", "hi"], invocation_id="7")

        assert json.loads(encode_frame(frame)) == {
            "type": "invocation",
            "target": "SendUserMessage",
            "arguments": ["sess-A", "hi"],
            "invocationId": "7",
        }

    def test_invocation_without_id_omits_field(self):
        d = json.loads(encode_frame(Invocation(target="GetConnectionId")))
        assert "invocationId" not in d

    def test_completion_shape(self):
        d = json.loads(encode_frame(Completion(invocation_id="3", error="boom")))
        assert d == {"type": "completion", "invocationId": "3", "result": None, "error": "boom"}

    def test_event_carries_timestamp(self):
        ts = datetime(2026, 1, 2, 14, 3, 7)
        d = json.loads(encode_frame(Event(target="ReceiveMessage", arguments=["x"], timestamp=ts)))
        assert d["timestamp"] == "2026-01-02T14:03:07"
        assert d["arguments"] == ["x"]


class TestDecode:
    """Test frame parsing and rejection of malformed input."""

    def test_decode_invocation(self):
        frame = decode_frame(
            '{"type": "invocation", "target": "JoinGroup", "arguments": ["g"], "invocationId": 5}'
        )
        assert isinstance(frame, Invocation)
        assert frame.target == "JoinGroup"
        assert frame.arguments == ["g"]
        assert frame.invocation_id == "5"

    def test_decode_invocation_defaults_arguments(self):
        frame = decode_frame('{"type": "invocation", "target": "GetConnectionId"}')
        assert frame.arguments == []
        assert frame.invocation_id is None

    def test_decode_completion(self):
        frame = decode_frame('{"type": "completion", "invocationId": "1", "result": {"a": 1}}')
        assert isinstance(frame, Completion)
        assert frame.ok
        assert frame.result == {"a": 1}

    def test_decode_event(self):
        frame = decode_frame(
            '{"type": "event", "target": "ReceiveMessage", "arguments": ["hi"], '
            '"timestamp": "2026-01-02T14:03:07"}'
        )
        assert isinstance(frame, Event)
        assert frame.timestamp == datetime(2026, 1, 2, 14, 3, 7)

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[1, 2]",
            '{"type": "bogus"}',
            '{"type": "invocation"}',
            '{"type": "invocation", "target": "X", "arguments": "nope"}',
            '{"type": "invocation", "target": "X", "invocationId": true}',
            '{"type": "completion"}',
            '{"type": "event", "target": "ReceiveMessage", "arguments": []}',
            '{"type": "event", "target": "ReceiveMessage", "timestamp": "yesterday"}',
        ],
    )
    def test_malformed_frames_raise(self, text):
        with pytest.raises(ProtocolError):
            decode_frame(text)

    def test_malformed_invocation_keeps_its_id(self):
        with pytest.raises(ProtocolError) as exc_info:
            decode_frame('{"type": "invocation", "target": "X", "arguments": 1, "invocationId": "9"}')

        assert exc_info.value.invocation_id == "9"

    def test_invalid_json_has_no_id(self):
        with pytest.raises(ProtocolError) as exc_info:
            decode_frame("{")

        assert exc_info.value.invocation_id is None
