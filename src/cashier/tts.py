"""
Speech playback for cashier replies.

`SpeechPlayer` owns the single playback session: synthesize with a
`TTSProvider`, play through an `AudioOutput`, then signal natural completion.
An explicit `stop()` never signals completion.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.cashier.config import get_config
from src.cashier.tts_providers.base import SynthesisError, TTSProvider
from src.cashier.tts_providers.elevenlabs import ElevenLabsTTS
from src.cashier.tts_providers.openai_tts import OpenAITTS

logger = structlog.get_logger(__name__)

_TERMINAL_PUNCTUATION = ".!?,;…"

FinishedCallback = Callable[[], Awaitable[None]]


class PlaybackError(Exception):
    """Raised by an AudioOutput when audio is blocked or fails to play."""
    pass


def prepare_speech_text(text: str, max_chars: int = 500) -> str:
    """
    Trim text for synthesis.

    Truncates to `max_chars` and pads the end so short trailing fragments are
    not clipped by the synthesizer.
    """
    text = (text or "").strip()[:max_chars]
    if not text:
        return ""
    if text[-1] in _TERMINAL_PUNCTUATION:
        return f"{text}  "
    return f"{text}. "


class AudioOutput(ABC):
    """Somewhere to play synthesized audio (a browser, a speaker, a test fake)."""

    @abstractmethod
    async def play(self, audio: bytes, mime_type: str) -> None:
        """Play `audio` and return once it has audibly finished."""
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError


def create_tts_provider(config: Optional[Any] = None) -> Optional[TTSProvider]:
    config = config or get_config()
    tts = (config.tts_provider or "elevenlabs").strip().lower()

    if tts == "elevenlabs":
        return ElevenLabsTTS(config)
    if tts == "openai":
        return OpenAITTS(config)
    if tts == "none":
        return None

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


class SpeechPlayer:
    """
    One playback session at a time.

    `speak()` resolves (never raises) on natural end, soft failure or stop.
    Natural end, synthesis failure, playback failure and playback timeout all
    invoke the completion callback; `stop()` and a superseding `speak()` do not.
    """

    def __init__(
        self,
        provider: Optional[TTSProvider],
        output: AudioOutput,
        *,
        tail_seconds: float = 0.4,
        playback_timeout: float = 60.0,
        max_chars: int = 500,
    ):
        self._provider = provider
        self._output = output
        self.tail_seconds = tail_seconds
        self.playback_timeout = playback_timeout
        self.max_chars = max_chars

        self._session = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def enabled(self) -> bool:
        return self._provider is not None

    async def speak(self, text: str, on_finished: Optional[FinishedCallback] = None) -> None:
        await self.stop()

        self._session += 1
        session = self._session
        task = asyncio.create_task(self._run(session, text, on_finished))
        self._task = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            if self._task is task:
                self._session += 1
                self._task = None
            task.cancel()
            raise

        if self._task is task:
            self._task = None

    async def stop(self) -> None:
        """Stop any playback. Safe to call repeatedly."""
        self._session += 1
        task = self._task
        self._task = None

        if task is None or task.done():
            return

        if self._provider is not None:
            self._provider.cancel()

        if task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        try:
            await self._output.stop()
        except Exception as e:
            logger.warning("Audio output stop failed", error=str(e))

        logger.debug("Speech stopped")

    async def _run(self, session: int, text: str, on_finished: Optional[FinishedCallback]) -> None:
        spoken = prepare_speech_text(text, self.max_chars)

        try:
            if not spoken:
                logger.debug("Nothing to speak")
            elif self._provider is None:
                logger.debug("TTS disabled, skipping speech")
            else:
                clip = await self._provider.synthesize(spoken)
                logger.debug("Speech synthesized", bytes=len(clip.audio), chars=len(spoken))
                await asyncio.wait_for(
                    self._output.play(clip.audio, clip.mime_type),
                    timeout=self.playback_timeout,
                )
                await asyncio.sleep(self.tail_seconds)
        except asyncio.CancelledError:
            raise
        except SynthesisError as e:
            logger.warning("Speech synthesis failed", error=str(e))
        except PlaybackError as e:
            logger.warning("Speech playback failed", error=str(e))
        except asyncio.TimeoutError:
            logger.warning("Speech playback timed out", timeout=self.playback_timeout)
        except Exception as e:
            logger.error("Speech playback error", error=str(e))

        if session != self._session:
            return

        if self._task is asyncio.current_task():
            self._task = None

        if on_finished is not None:
            try:
                await on_finished()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Speech completion callback failed", error=str(e))

    async def close(self) -> None:
        await self.stop()
        if self._provider is not None:
            await self._provider.close()
