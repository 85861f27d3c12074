"""
Speech capture for the cashier.

`SpeechCapture` runs one listening session at a time on top of a
`SpeechRecognizer` engine and turns the engine's interim/final results into a
single final transcript per session.

Engines:
- ClientRecognizer: the browser runs speech recognition and relays results
  over the session socket. The server only sends start/stop/abort commands.
- DeepgramRecognizer: the browser streams 16 kHz linear PCM, Deepgram
  transcribes it over a streaming WebSocket.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.cashier.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_V1_URL = "wss://api.deepgram.com/v1/listen"


class SpeechRecognitionError(Exception):
    """Raised when a recognizer session cannot start or fails."""
    pass


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


TranscriptCallback = Callable[[TranscriptionResult], Awaitable[None]]
EndCallback = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]


class SpeechRecognizer(ABC):
    """
    A speech-to-text engine.

    One session per `start()`. A session reports zero or more transcripts and
    then ends (`on_end`) or fails (`on_error`). `abort()` ends the session
    without reporting anything.
    """

    name: str = "base"

    def __init__(self) -> None:
        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_end: Optional[EndCallback] = None
        self._on_error: Optional[ErrorCallback] = None

    def attach(
        self,
        on_transcript: TranscriptCallback,
        on_end: EndCallback,
        on_error: ErrorCallback,
    ) -> None:
        self._on_transcript = on_transcript
        self._on_end = on_end
        self._on_error = on_error

    @abstractmethod
    async def start(self, session_id: int) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        """Finish the session; pending results are still delivered."""
        raise NotImplementedError

    @abstractmethod
    async def abort(self) -> None:
        """Discard the session; nothing more is delivered."""
        raise NotImplementedError

    async def send_audio(self, audio_bytes: bytes) -> None:
        return None

    async def close(self) -> None:
        await self.abort()

    async def _emit_transcript(self, result: TranscriptionResult) -> None:
        if self._on_transcript:
            await self._on_transcript(result)

    async def _emit_end(self) -> None:
        if self._on_end:
            await self._on_end()

    async def _emit_error(self, message: str) -> None:
        if self._on_error:
            await self._on_error(message)


class SpeechCapture:
    """
    Listening sessions over a recognizer.

    - start(): aborts any session in progress, then starts a new one.
    - stop(): asks the engine to finish; the final transcript still arrives.
    - abort(): ends the session silently.

    When a session ends, `on_final(text)` fires if any final text was heard,
    otherwise `on_no_speech()`. Errors end the session with `on_no_speech()`.
    Nothing fires for an aborted session.
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        *,
        on_interim: Optional[Callable[[str], Awaitable[None]]] = None,
        on_final: Optional[Callable[[str], Awaitable[None]]] = None,
        on_no_speech: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.recognizer = recognizer
        self.on_interim = on_interim
        self.on_final = on_final
        self.on_no_speech = on_no_speech

        self._session_id = 0
        self._active = False
        self._final_text = ""

        recognizer.attach(self._handle_transcript, self._handle_end, self._handle_error)

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def session_id(self) -> int:
        return self._session_id

    async def start(self) -> bool:
        """Start a new session. Returns False when the engine refused to start."""
        if self._active:
            await self.abort()

        self._session_id += 1
        self._final_text = ""
        self._active = True

        try:
            await self.recognizer.start(self._session_id)
        except SpeechRecognitionError as e:
            logger.warning("Speech recognition failed to start", error=str(e))
            self._active = False
            return False

        logger.debug("Listening session started", session_id=self._session_id)
        return True

    async def stop(self) -> None:
        if not self._active:
            return
        logger.debug("Listening session stopping", session_id=self._session_id)
        await self.recognizer.stop()

    async def abort(self) -> None:
        if not self._active:
            return
        self._active = False
        self._final_text = ""
        logger.debug("Listening session aborted", session_id=self._session_id)
        await self.recognizer.abort()

    async def send_audio(self, audio_bytes: bytes) -> None:
        if self._active:
            await self.recognizer.send_audio(audio_bytes)

    async def close(self) -> None:
        await self.abort()
        await self.recognizer.close()

    async def _handle_transcript(self, result: TranscriptionResult) -> None:
        if not self._active:
            return

        if result.is_final:
            self._final_text = f"{self._final_text} {result.text}".strip()
            shown = self._final_text
        else:
            shown = f"{self._final_text} {result.text}".strip()

        if self.on_interim and shown:
            await self.on_interim(shown)

    async def _handle_end(self) -> None:
        if not self._active:
            return

        self._active = False
        final = self._final_text.strip()
        self._final_text = ""

        logger.debug("Listening session ended", session_id=self._session_id, heard=bool(final))

        if final:
            if self.on_final:
                await self.on_final(final)
        elif self.on_no_speech:
            await self.on_no_speech()

    async def _handle_error(self, message: str) -> None:
        if not self._active:
            return

        logger.warning("Speech recognition error", error=message, session_id=self._session_id)
        self._active = False
        self._final_text = ""

        if self.on_no_speech:
            await self.on_no_speech()


class ClientRecognizer(SpeechRecognizer):
    """
    Recognition runs in the client; this side relays commands and results.

    `send_command(action, session_id)` delivers "start" / "stop" / "abort" to
    the client. The client echoes the session id on every result so results
    from an aborted session are dropped.
    """

    name = "client"

    def __init__(self, send_command: Callable[[str, int], Awaitable[None]]):
        super().__init__()
        self._send_command = send_command
        self._session_id: Optional[int] = None

    async def start(self, session_id: int) -> None:
        self._session_id = session_id
        try:
            await self._send_command("start", session_id)
        except Exception as e:
            self._session_id = None
            raise SpeechRecognitionError(f"Could not start client recognition: {e}") from e

    async def stop(self) -> None:
        if self._session_id is not None:
            await self._send_command("stop", self._session_id)

    async def abort(self) -> None:
        if self._session_id is None:
            return
        session_id = self._session_id
        self._session_id = None
        await self._send_command("abort", session_id)

    def _is_current(self, session_id: int) -> bool:
        return self._session_id is not None and session_id == self._session_id

    async def handle_transcript(self, session_id: int, text: str, is_final: bool) -> None:
        if not self._is_current(session_id) or not text:
            return
        await self._emit_transcript(TranscriptionResult(text=text, is_final=is_final))

    async def handle_end(self, session_id: int) -> None:
        if not self._is_current(session_id):
            return
        self._session_id = None
        await self._emit_end()

    async def handle_error(self, session_id: int, error: str) -> None:
        if not self._is_current(session_id):
            return
        self._session_id = None
        await self._emit_error(error or "unknown")


class DeepgramRecognizer(SpeechRecognizer):
    """
    Deepgram streaming STT over a raw WebSocket, one connection per session.

    The session ends on Deepgram's end-of-utterance signal or after `stop()`
    (CloseStream flushes the remaining results, then Deepgram closes).
    """

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None, *, sample_rate: int = 16000):
        super().__init__()
        if config is None:
            config = get_config()

        self.config = config
        self.sample_rate = sample_rate
        self._ws = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False

    def _url(self) -> str:
        params = {
            "model": "nova-2",
            "language": self.config.deepgram_language,
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true",
            "endpointing": 300,
            "utterance_end_ms": 1000,
            "vad_events": "true",
        }
        return f"{DEEPGRAM_V1_URL}?{urlencode(params)}"

    async def start(self, session_id: int) -> None:
        await self.abort()

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self._url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            raise SpeechRecognitionError(f"Deepgram connection failed: {e}") from e

        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))
        logger.info("Deepgram STT connected", session_id=session_id)

    async def send_audio(self, audio_bytes: bytes) -> None:
        if not self._ws or self._closing:
            return
        try:
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def stop(self) -> None:
        await self._close_stream()

    async def _close_stream(self) -> None:
        if not self._ws or self._closing:
            return
        self._closing = True
        try:
            await self._ws.send(json.dumps({"type": "CloseStream"}))
        except Exception as e:
            logger.warning("Error closing Deepgram stream", error=str(e))

    async def abort(self) -> None:
        task = self._receive_task
        ws = self._ws
        self._receive_task = None
        self._ws = None
        self._closing = False

        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if ws:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

    async def _receive_loop(self, ws: Any) -> None:
        failed: Optional[str] = None
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                await self._handle_message(data)
        except websockets.exceptions.ConnectionClosedError as e:
            failed = f"Deepgram connection closed: {e}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
            failed = str(e)

        if self._ws is not ws:
            return

        self._ws = None
        self._receive_task = None
        try:
            await ws.close()
        except Exception:
            logger.debug("Deepgram socket already closed")

        if failed:
            await self._emit_error(failed)
        else:
            await self._emit_end()

    async def _handle_message(self, data: dict) -> None:
        msg_type = str(data.get("type", "")).lower()

        if msg_type == "results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            if transcript:
                logger.debug(
                    "STT transcript",
                    text=transcript[:50],
                    is_final=data.get("is_final", False),
                )
                await self._emit_transcript(
                    TranscriptionResult(
                        text=transcript,
                        is_final=bool(data.get("is_final", False)),
                        confidence=alternatives[0].get("confidence", 0.0),
                    )
                )

            if data.get("speech_final"):
                await self._close_stream()

        elif msg_type == "utteranceend":
            logger.debug("Utterance end detected")
            await self._close_stream()

        elif msg_type == "error":
            logger.error("Deepgram error", error=data.get("message", "Unknown"))


def create_recognizer(
    config: Optional[Any] = None,
    *,
    send_command: Optional[Callable[[str, int], Awaitable[None]]] = None,
) -> SpeechRecognizer:
    config = config or get_config()
    stt = (config.stt_provider or "client").strip().lower()

    if stt == "deepgram":
        return DeepgramRecognizer(config)
    if stt == "client":
        if send_command is None:
            raise ValueError("Client speech recognition needs a command channel")
        return ClientRecognizer(send_command)

    raise ValueError(f"Unsupported STT_PROVIDER: {config.stt_provider}")
