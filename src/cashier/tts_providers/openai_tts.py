from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.cashier.config import get_config
from src.cashier.tts_providers.base import SynthesisError, SynthesizedAudio, TTSProvider

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Synthesizes a full MP3 clip per request.
    """

    name = "openai"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._inflight: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        if self._inflight and not self._inflight.done():
            self._inflight.cancel()

    async def _generate_mp3(self, text: str) -> bytes:
        from openai import OpenAI  # Local import to keep module import light

        client = OpenAI(api_key=self.config.openai_api_key)

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="mp3",
            )
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            return resp.read()

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str) -> SynthesizedAudio:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        task = asyncio.create_task(self._generate_mp3(text))
        self._inflight = task

        try:
            audio = await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise SynthesisError(str(e)) from e
        finally:
            if self._inflight is task:
                self._inflight = None

        return SynthesizedAudio(audio=audio, mime_type="audio/mpeg")
