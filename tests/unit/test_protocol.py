"""Unit tests for the control-channel protocol."""

import json

import pytest

from src.tutor import protocol
from src.tutor.events import (
    ResponseCompleted,
    ServerError,
    SpeechStarted,
    SpeechStopped,
    TranscriptFragment,
)
from src.tutor.transcript_buffer import Role


class TestOutboundMessages:
    """Test outbound message builders."""

    def test_session_update_shape(self) -> None:
        msg = protocol.session_update(
            "Be kind.", transcription_model="gpt-4o-mini-transcribe", voice="alloy"
        )

        assert msg["type"] == "session.update"
        session = msg["session"]
        assert session["type"] == "realtime"
        assert session["instructions"] == "Be kind."
        assert session["audio"]["input"]["transcription"] == {
            "model": "gpt-4o-mini-transcribe",
            "language": "en",
        }
        assert session["audio"]["input"]["turn_detection"] == {"type": "server_vad"}
        assert session["audio"]["output"] == {"voice": "alloy"}

    def test_session_update_without_voice(self) -> None:
        msg = protocol.session_update("x", transcription_model="m")
        assert "output" not in msg["session"]["audio"]

    def test_response_create(self) -> None:
        assert protocol.response_create() == {"type": "response.create"}
        assert protocol.response_create("Greet") == {
            "type": "response.create",
            "response": {"instructions": "Greet"},
        }

    def test_conversation_item_create(self) -> None:
        msg = protocol.conversation_item_create("Are you there?")

        assert msg["type"] == "conversation.item.create"
        assert msg["item"]["role"] == "user"
        assert msg["item"]["content"] == [{"type": "input_text", "text": "Are you there?"}]

    def test_encode_keeps_unicode(self) -> None:
        encoded = protocol.encode(protocol.response_create("Namaste, ścieżka"))
        assert "ścieżka" in encoded
        assert json.loads(encoded)["response"]["instructions"] == "Namaste, ścieżka"


class TestParseServerEvent:
    """Test inbound frame parsing."""

    @pytest.mark.parametrize(
        ("frame", "expected"),
        [
            ({"type": "input_audio_buffer.speech_started"}, SpeechStarted()),
            ({"type": "input_audio_buffer.speech_stopped"}, SpeechStopped()),
            ({"type": "response.done", "response": {"id": "resp_1"}}, ResponseCompleted("resp_1")),
            ({"type": "response.completed"}, ResponseCompleted(None)),
        ],
    )
    def test_turn_taking_events(self, frame: dict, expected: object) -> None:
        assert protocol.parse_server_event(json.dumps(frame)) == expected

    def test_tutor_transcript(self) -> None:
        event = protocol.parse_server_event(
            json.dumps({"type": "response.output_audio_transcript.done", "transcript": "Hello!"})
        )
        assert event == TranscriptFragment(role=Role.TUTOR, text="Hello!")

    def test_tutor_text_output(self) -> None:
        event = protocol.parse_server_event(
            json.dumps({"type": "response.output_text.done", "text": "Hi there"})
        )
        assert event == TranscriptFragment(role=Role.TUTOR, text="Hi there")

    def test_student_transcript(self) -> None:
        event = protocol.parse_server_event(
            json.dumps(
                {
                    "type": "conversation.item.input_audio_transcription.completed",
                    "transcript": "I am fine.",
                }
            )
        )
        assert event == TranscriptFragment(role=Role.STUDENT, text="I am fine.")

    def test_blank_transcript_ignored(self) -> None:
        raw = json.dumps({"type": "response.audio_transcript.done", "transcript": "  "})
        assert protocol.parse_server_event(raw) is None

    def test_deltas_ignored(self) -> None:
        raw = json.dumps({"type": "response.output_audio_transcript.delta", "delta": "Hel"})
        assert protocol.parse_server_event(raw) is None

    def test_error_event(self) -> None:
        raw = json.dumps(
            {"type": "error", "error": {"message": "Rate limited", "code": "rate_limit"}}
        )
        assert protocol.parse_server_event(raw) == ServerError("Rate limited", "rate_limit")

    def test_bytes_frame(self) -> None:
        raw = json.dumps({"type": "input_audio_buffer.speech_started"}).encode()
        assert protocol.parse_server_event(raw) == SpeechStarted()

    @pytest.mark.parametrize("raw", ["not json", "[]", '{"no_type": 1}', '{"type": 5}'])
    def test_malformed_frames_raise(self, raw: str) -> None:
        with pytest.raises(protocol.ProtocolError):
            protocol.parse_server_event(raw)
