"""
Client WebSocket protocol for ordering sessions.

Every message is a JSON object with a `type` field.

Inbound (client -> server):
- start: begin a conversation ({"voice_mode": bool})
- text: typed customer input ({"text": str})
- listen_start / listen_stop: manual microphone control
- transcript: recognition result ({"session": int, "text": str, "final": bool})
- listen_end / listen_error: recognition session ended or failed
- audio: base64 PCM for server-side recognition (binary frames also accepted)
- playback_ended / playback_error: audio clip finished or failed ({"playback_id": int})
- mute, voice_mode, new_order, modify_order, replay

Outbound (server -> client):
- event: controller event ({"event": str, ...payload})
- audio: a clip to play ({"playback_id": int, "mime_type": str, "payload": base64})
- stop_audio: stop the clip with `playback_id`
- listen: recognition command ({"action": "start" | "stop" | "abort", "session": int})
- error: a message could not be handled
"""

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Tuple, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ClientEventType(str, Enum):
    START = "start"
    TEXT = "text"
    LISTEN_START = "listen_start"
    LISTEN_STOP = "listen_stop"
    TRANSCRIPT = "transcript"
    LISTEN_END = "listen_end"
    LISTEN_ERROR = "listen_error"
    AUDIO = "audio"
    PLAYBACK_ENDED = "playback_ended"
    PLAYBACK_ERROR = "playback_error"
    MUTE = "mute"
    VOICE_MODE = "voice_mode"
    NEW_ORDER = "new_order"
    MODIFY_ORDER = "modify_order"
    REPLAY = "replay"


@dataclass
class StartEvent:
    voice_mode: bool = True

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StartEvent":
        return cls(voice_mode=bool(message.get("voice_mode", True)))


@dataclass
class TextEvent:
    text: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TextEvent":
        return cls(text=str(message.get("text", "")))


@dataclass
class TranscriptEvent:
    session: int
    text: str
    final: bool

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TranscriptEvent":
        return cls(
            session=int(message.get("session", 0)),
            text=str(message.get("text", "")),
            final=bool(message.get("final", False)),
        )


@dataclass
class ListenEndEvent:
    session: int
    error: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "ListenEndEvent":
        return cls(
            session=int(message.get("session", 0)),
            error=str(message.get("error", "")),
        )


@dataclass
class AudioEvent:
    payload: bytes

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "AudioEvent":
        try:
            payload = base64.b64decode(message.get("payload", ""))
        except Exception:
            payload = b""
        return cls(payload=payload)


@dataclass
class PlaybackEvent:
    playback_id: int
    error: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PlaybackEvent":
        return cls(
            playback_id=int(message.get("playback_id", 0)),
            error=str(message.get("error", "")),
        )


@dataclass
class ToggleEvent:
    value: bool

    @classmethod
    def from_message(cls, message: Dict[str, Any], key: str) -> "ToggleEvent":
        return cls(value=bool(message.get(key, False)))


@dataclass
class ReplayEvent:
    turn_id: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "ReplayEvent":
        return cls(turn_id=str(message.get("turn_id", "")))


def parse_client_message(raw_message: Union[str, bytes]) -> Tuple[ClientEventType, Any]:
    """
    Parse a raw client WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse client message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message must be a JSON object")

    event_type_str = message.get("type", "")
    try:
        event_type = ClientEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown client event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    try:
        if event_type == ClientEventType.START:
            return event_type, StartEvent.from_message(message)
        if event_type == ClientEventType.TEXT:
            return event_type, TextEvent.from_message(message)
        if event_type == ClientEventType.TRANSCRIPT:
            return event_type, TranscriptEvent.from_message(message)
        if event_type in (ClientEventType.LISTEN_END, ClientEventType.LISTEN_ERROR):
            return event_type, ListenEndEvent.from_message(message)
        if event_type == ClientEventType.AUDIO:
            return event_type, AudioEvent.from_message(message)
        if event_type in (ClientEventType.PLAYBACK_ENDED, ClientEventType.PLAYBACK_ERROR):
            return event_type, PlaybackEvent.from_message(message)
        if event_type == ClientEventType.MUTE:
            return event_type, ToggleEvent.from_message(message, "muted")
        if event_type == ClientEventType.VOICE_MODE:
            return event_type, ToggleEvent.from_message(message, "enabled")
        if event_type == ClientEventType.REPLAY:
            return event_type, ReplayEvent.from_message(message)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {event_type.value} message: {e}")

    return event_type, message


def create_event_message(event_type: str, payload: Dict[str, Any]) -> str:
    message = {"type": "event", "event": event_type, **payload}
    return encoder.encode(message).decode("utf-8")


def create_audio_message(playback_id: int, audio: bytes, mime_type: str) -> str:
    """
    Create an audio message.

    The client acknowledges with playback_ended / playback_error carrying
    the same playback id.
    """
    message = {
        "type": "audio",
        "playback_id": playback_id,
        "mime_type": mime_type,
        "payload": base64.b64encode(audio).decode("utf-8"),
    }
    return encoder.encode(message).decode("utf-8")


def create_stop_audio_message(playback_id: int) -> str:
    return encoder.encode({"type": "stop_audio", "playback_id": playback_id}).decode("utf-8")


def create_listen_message(action: str, session: int) -> str:
    return encoder.encode({"type": "listen", "action": action, "session": session}).decode("utf-8")


def create_error_message(message: str) -> str:
    return encoder.encode({"type": "error", "message": message}).decode("utf-8")
