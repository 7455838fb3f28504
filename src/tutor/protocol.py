"""Control-channel message protocol.

Outbound messages are plain JSON objects built by the helpers below.
Inbound frames are parsed into session events; frames that carry nothing the
controller acts on yield None, malformed frames raise ``ProtocolError`` so the
caller can log and drop them without disturbing the session.
"""

import json
from typing import Any

from src.tutor.events import (
    ResponseCompleted,
    ServerError,
    SessionEvent,
    SpeechStarted,
    SpeechStopped,
    TranscriptFragment,
)
from src.tutor.transcript_buffer import Role

SPEECH_STARTED_TYPES = frozenset({"input_audio_buffer.speech_started"})
SPEECH_STOPPED_TYPES = frozenset({"input_audio_buffer.speech_stopped"})
RESPONSE_DONE_TYPES = frozenset({"response.done", "response.completed"})
TUTOR_TEXT_TYPES = frozenset(
    {
        "response.output_audio_transcript.done",
        "response.audio_transcript.done",
        "response.output_text.done",
        "response.text.done",
    }
)
STUDENT_TEXT_TYPES = frozenset({"conversation.item.input_audio_transcription.completed"})


class ProtocolError(ValueError):
    """Inbound frame is not a well-formed protocol message."""


def session_update(
    instructions: str,
    transcription_model: str,
    language: str = "en",
    voice: str | None = None,
) -> dict[str, Any]:
    """Configuration message: persona, transcription capture and turn detection."""
    audio: dict[str, Any] = {
        "input": {
            "transcription": {"model": transcription_model, "language": language},
            "turn_detection": {"type": "server_vad"},
        },
    }
    if voice:
        audio["output"] = {"voice": voice}

    return {
        "type": "session.update",
        "session": {
            "type": "realtime",
            "instructions": instructions,
            "audio": audio,
        },
    }


def response_create(instructions: str | None = None) -> dict[str, Any]:
    """Request a tutor reply, optionally with one-off instructions."""
    message: dict[str, Any] = {"type": "response.create"}
    if instructions:
        message["response"] = {"instructions": instructions}
    return message


def conversation_item_create(text: str, role: str = "user") -> dict[str, Any]:
    """Inject a scripted utterance into the conversation."""
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": role,
            "content": [{"type": "input_text", "text": text}],
        },
    }


def encode(message: dict[str, Any]) -> str:
    """Serialize an outbound message."""
    return json.dumps(message, ensure_ascii=False)


def parse_server_event(raw: str | bytes) -> SessionEvent | None:
    """Parse one inbound control-channel frame.

    Args:
        raw: JSON frame as received on the data channel

    Returns:
        The corresponding session event, or None for frames the controller
        does not act on (deltas, acknowledgements, rate limits, ...)

    Raises:
        ProtocolError: If the frame is not a JSON object with a string type
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        raise ProtocolError("Frame has no message type")

    msg_type: str = msg["type"]

    if msg_type in SPEECH_STARTED_TYPES:
        return SpeechStarted()

    if msg_type in SPEECH_STOPPED_TYPES:
        return SpeechStopped()

    if msg_type in RESPONSE_DONE_TYPES:
        response = msg.get("response")
        response_id = response.get("id") if isinstance(response, dict) else None
        return ResponseCompleted(response_id=response_id)

    if msg_type in TUTOR_TEXT_TYPES:
        text = msg.get("transcript", msg.get("text"))
        if isinstance(text, str) and text.strip():
            return TranscriptFragment(role=Role.TUTOR, text=text)
        return None

    if msg_type in STUDENT_TEXT_TYPES:
        text = msg.get("transcript")
        if isinstance(text, str) and text.strip():
            return TranscriptFragment(role=Role.STUDENT, text=text)
        return None

    if msg_type == "error":
        error = msg.get("error")
        if isinstance(error, dict):
            return ServerError(message=str(error.get("message", "")), code=error.get("code"))
        return ServerError(message=str(error or "unknown error"))

    return None
