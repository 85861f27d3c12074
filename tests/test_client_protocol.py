"""
Tests for the client WebSocket protocol.
"""

import base64
import json

import pytest

from src.cashier.client_protocol import (
    ClientEventType,
    create_audio_message,
    create_error_message,
    create_event_message,
    create_listen_message,
    create_stop_audio_message,
    parse_client_message,
)


class TestParseClientMessage:
    """Inbound message parsing."""

    def test_start(self):
        event_type, event = parse_client_message('{"type": "start", "voice_mode": false}')

        assert event_type == ClientEventType.START
        assert event.voice_mode is False

    def test_start_defaults_to_voice(self):
        _, event = parse_client_message('{"type": "start"}')

        assert event.voice_mode is True

    def test_text(self):
        event_type, event = parse_client_message('{"type": "text", "text": "A mocha"}')

        assert event_type == ClientEventType.TEXT
        assert event.text == "A mocha"

    def test_transcript(self):
        event_type, event = parse_client_message(
            '{"type": "transcript", "session": 3, "text": "a latte", "final": true}'
        )

        assert event_type == ClientEventType.TRANSCRIPT
        assert (event.session, event.text, event.final) == (3, "a latte", True)

    def test_listen_error(self):
        event_type, event = parse_client_message(
            '{"type": "listen_error", "session": 2, "error": "not-allowed"}'
        )

        assert event_type == ClientEventType.LISTEN_ERROR
        assert event.error == "not-allowed"

    def test_audio_payload_decoded(self):
        payload = base64.b64encode(b"\x01\x02").decode("utf-8")
        _, event = parse_client_message(json.dumps({"type": "audio", "payload": payload}))

        assert event.payload == b"\x01\x02"

    def test_playback_ack(self):
        event_type, event = parse_client_message('{"type": "playback_ended", "playback_id": 7}')

        assert event_type == ClientEventType.PLAYBACK_ENDED
        assert event.playback_id == 7

    def test_toggles(self):
        _, mute = parse_client_message('{"type": "mute", "muted": true}')
        _, voice = parse_client_message('{"type": "voice_mode", "enabled": false}')

        assert mute.value is True
        assert voice.value is False

    def test_bare_commands(self):
        event_type, message = parse_client_message(b'{"type": "new_order"}')

        assert event_type == ClientEventType.NEW_ORDER
        assert message == {"type": "new_order"}

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_client_message("{not json")

    def test_not_an_object(self):
        with pytest.raises(ValueError):
            parse_client_message("[1, 2]")

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_client_message('{"type": "dance"}')

    def test_bad_field_type(self):
        with pytest.raises(ValueError):
            parse_client_message('{"type": "transcript", "session": "abc"}')


class TestOutboundMessages:
    def test_event_message(self):
        message = json.loads(create_event_message("state", {"previous": "idle", "state": "listening"}))

        assert message == {"type": "event", "event": "state", "previous": "idle", "state": "listening"}

    def test_audio_message(self):
        message = json.loads(create_audio_message(4, b"mp3", "audio/mpeg"))

        assert message["type"] == "audio"
        assert message["playback_id"] == 4
        assert base64.b64decode(message["payload"]) == b"mp3"

    def test_control_messages(self):
        assert json.loads(create_stop_audio_message(4)) == {"type": "stop_audio", "playback_id": 4}
        assert json.loads(create_listen_message("start", 2)) == {
            "type": "listen",
            "action": "start",
            "session": 2,
        }
        assert json.loads(create_error_message("nope")) == {"type": "error", "message": "nope"}
