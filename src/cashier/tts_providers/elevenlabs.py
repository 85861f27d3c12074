from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from src.cashier.config import get_config
from src.cashier.tts_providers.base import SynthesisError, SynthesizedAudio, TTSProvider

logger = structlog.get_logger(__name__)


class ElevenLabsTTS(TTSProvider):
    """
    ElevenLabs text-to-speech over its REST API.

    Returns the whole MP3 clip in one response.
    """

    name = "elevenlabs"

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.elevenlabs_base_url.rstrip("/"),
                headers={
                    "xi-api-key": self.config.elevenlabs_api_key,
                    "Content-Type": "application/json",
                    "Accept": "audio/mpeg",
                },
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def synthesize(self, text: str) -> SynthesizedAudio:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        client = await self._get_client()
        body = {
            "text": text,
            "model_id": self.config.elevenlabs_model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }

        try:
            response = await client.post(
                f"/v1/text-to-speech/{self.config.elevenlabs_voice_id}",
                json=body,
            )
        except httpx.TimeoutException as e:
            raise SynthesisError(f"ElevenLabs request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise SynthesisError(f"Failed to connect to ElevenLabs API: {e}") from e

        if response.status_code != 200:
            logger.warning(
                "ElevenLabs TTS error",
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise SynthesisError(f"ElevenLabs API error: {response.status_code}")

        return SynthesizedAudio(audio=response.content, mime_type="audio/mpeg")

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
