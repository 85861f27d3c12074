"""
Per-connection ordering session.

Wires the speech adapters, the order store and the turn controller to one
client WebSocket and dispatches inbound client messages.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from src.cashier.client_protocol import (
    ClientEventType,
    create_audio_message,
    create_error_message,
    create_event_message,
    create_listen_message,
    create_stop_audio_message,
    parse_client_message,
)
from src.cashier.config import get_config
from src.cashier.controller import ControllerEvent, TurnController
from src.cashier.llm import CashierLLM, get_llm
from src.cashier.orders import OrderStore, get_order_store
from src.cashier.stt import ClientRecognizer, SpeechCapture, SpeechRecognizer, create_recognizer
from src.cashier.tts import AudioOutput, PlaybackError, SpeechPlayer, create_tts_provider
from src.cashier.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]

_UNSET: Any = object()


class WebSocketAudioOutput(AudioOutput):
    """
    Plays clips on the client.

    Each clip gets a playback id. The client acknowledges with the same id, so
    acknowledgements for a clip that was already stopped are ignored.
    """

    def __init__(self, send: SendMessage):
        self._send = send
        self._playback_id = 0
        self._pending: Optional[asyncio.Future] = None

    @property
    def playback_id(self) -> int:
        return self._playback_id

    async def play(self, audio: bytes, mime_type: str) -> None:
        self._playback_id += 1
        playback_id = self._playback_id
        done = asyncio.get_running_loop().create_future()
        self._pending = done

        try:
            try:
                await self._send(create_audio_message(playback_id, audio, mime_type))
            except Exception as e:
                raise PlaybackError(f"Could not send audio: {e}") from e
            await done
        finally:
            if self._pending is done:
                self._pending = None

    async def stop(self) -> None:
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.done():
            pending.cancel()
        await self._send(create_stop_audio_message(self._playback_id))

    def _resolve(self, playback_id: int) -> Optional[asyncio.Future]:
        pending = self._pending
        if playback_id != self._playback_id or pending is None or pending.done():
            logger.debug(
                "Ignoring stale playback acknowledgment",
                playback_id=playback_id,
                current_playback_id=self._playback_id,
            )
            return None
        return pending

    def handle_ended(self, playback_id: int) -> None:
        pending = self._resolve(playback_id)
        if pending is not None:
            pending.set_result(None)

    def handle_error(self, playback_id: int, error: str) -> None:
        pending = self._resolve(playback_id)
        if pending is not None:
            pending.set_exception(PlaybackError(error or "playback failed"))


class CashierSession:
    """One ordering conversation bound to one client connection."""

    def __init__(
        self,
        send_message: SendMessage,
        *,
        config: Optional[Any] = None,
        llm: Optional[CashierLLM] = None,
        store: Optional[OrderStore] = None,
        tts_provider: Optional[TTSProvider] = _UNSET,
        recognizer: Optional[SpeechRecognizer] = None,
    ):
        self.config = config or get_config()
        self._send_raw = send_message
        self._send_lock = asyncio.Lock()
        self._closed = False

        if tts_provider is _UNSET:
            tts_provider = create_tts_provider(self.config)

        self.output = WebSocketAudioOutput(self._send)
        self.player = SpeechPlayer(
            tts_provider,
            self.output,
            tail_seconds=self.config.playback_tail_ms / 1000.0,
            playback_timeout=self.config.playback_timeout_seconds,
            max_chars=self.config.tts_max_chars,
        )
        self.recognizer = recognizer or create_recognizer(
            self.config,
            send_command=self._send_listen_command,
        )
        self.capture = SpeechCapture(self.recognizer)
        self.controller = TurnController(
            llm=llm or get_llm(),
            player=self.player,
            store=store or get_order_store(),
            capture=self.capture,
            config=self.config,
            on_event=self._forward_event,
        )

    async def _send(self, message: str) -> None:
        if self._closed:
            return
        async with self._send_lock:
            await self._send_raw(message)

    async def _send_listen_command(self, action: str, session_id: int) -> None:
        await self._send(create_listen_message(action, session_id))

    async def _forward_event(self, event: ControllerEvent) -> None:
        await self._send(create_event_message(event.type, event.payload))

    async def handle_audio(self, audio_bytes: bytes) -> None:
        await self.capture.send_audio(audio_bytes)

    async def handle_message(self, raw_message: Union[str, bytes]) -> None:
        """Dispatch one inbound client message. Invalid messages get an error reply."""
        try:
            event_type, event = parse_client_message(raw_message)
        except ValueError as e:
            await self._send(create_error_message(str(e)))
            return

        controller = self.controller

        if event_type == ClientEventType.START:
            await controller.start(voice_mode=event.voice_mode)
        elif event_type == ClientEventType.TEXT:
            await controller.submit_input(event.text)
        elif event_type == ClientEventType.LISTEN_START:
            await controller.start_listening()
        elif event_type == ClientEventType.LISTEN_STOP:
            await controller.stop_listening()
        elif event_type in (
            ClientEventType.TRANSCRIPT,
            ClientEventType.LISTEN_END,
            ClientEventType.LISTEN_ERROR,
        ):
            await self._relay_recognition(event_type, event)
        elif event_type == ClientEventType.AUDIO:
            await self.capture.send_audio(event.payload)
        elif event_type == ClientEventType.PLAYBACK_ENDED:
            self.output.handle_ended(event.playback_id)
        elif event_type == ClientEventType.PLAYBACK_ERROR:
            self.output.handle_error(event.playback_id, event.error)
        elif event_type == ClientEventType.MUTE:
            await controller.set_muted(event.value)
        elif event_type == ClientEventType.VOICE_MODE:
            await controller.set_voice_mode(event.value)
        elif event_type == ClientEventType.NEW_ORDER:
            await controller.new_order()
        elif event_type == ClientEventType.MODIFY_ORDER:
            if not await controller.modify_order():
                await self._send(create_error_message("There is no saved order to modify."))
        elif event_type == ClientEventType.REPLAY:
            if not await controller.replay(event.turn_id):
                await self._send(create_error_message(f"Unknown cashier turn: {event.turn_id}"))

    async def _relay_recognition(self, event_type: ClientEventType, event: Any) -> None:
        recognizer = self.recognizer
        if not isinstance(recognizer, ClientRecognizer):
            logger.warning("Client recognition message ignored", event_type=event_type.value)
            return

        if event_type == ClientEventType.TRANSCRIPT:
            await recognizer.handle_transcript(event.session, event.text, event.final)
        elif event_type == ClientEventType.LISTEN_END:
            await recognizer.handle_end(event.session)
        else:
            await recognizer.handle_error(event.session, event.error)

    async def close(self) -> None:
        if self._closed:
            return
        await self.controller.close()
        self._closed = True
        await self.capture.close()
        await self.player.close()
