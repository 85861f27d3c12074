from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class SynthesisError(Exception):
    """Raised when a provider cannot turn text into audio."""
    pass


@dataclass
class SynthesizedAudio:
    audio: bytes
    mime_type: str = "audio/mpeg"


class TTSProvider(ABC):
    name: str = "base"

    @abstractmethod
    async def synthesize(self, text: str) -> SynthesizedAudio:
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
