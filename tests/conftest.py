"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Optional
from unittest.mock import patch

import pytest

from src.cashier.config import Config
from src.cashier.controller import ControllerEvent, TurnController
from src.cashier.orders import InMemoryOrderStore
from src.cashier.stt import SpeechCapture, SpeechRecognizer, TranscriptionResult
from src.cashier.tts import AudioOutput, PlaybackError, SpeechPlayer
from src.cashier.tts_providers.base import SynthesisError, SynthesizedAudio, TTSProvider


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "LLM_PROVIDER": "groq",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "TTS_PROVIDER": "elevenlabs",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "STT_PROVIDER": "client",
        "ORDER_STORE": "memory",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.cashier.config import get_config
        get_config.cache_clear()
        yield


class FakeLLM:
    """
    Scripted model stream.

    Each queued script is a list of steps: a str is yielded as a chunk, an
    asyncio.Event is awaited, an exception is raised.
    """

    def __init__(self) -> None:
        self.scripts: List[List[Any]] = []
        self.calls: List[List[dict]] = []
        self.closed = 0

    def queue(self, *steps: Any) -> None:
        self.scripts.append(list(steps))

    async def stream_reply(self, messages):
        self.calls.append(list(messages))
        steps = self.scripts.pop(0) if self.scripts else []
        try:
            for step in steps:
                if isinstance(step, asyncio.Event):
                    await step.wait()
                elif isinstance(step, BaseException):
                    raise step
                else:
                    yield step
        finally:
            self.closed += 1


class FakeTTSProvider(TTSProvider):
    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.texts: List[str] = []
        self.fail = fail
        self.closed = False

    async def synthesize(self, text: str) -> SynthesizedAudio:
        self.texts.append(text)
        if self.fail:
            raise SynthesisError("synthesis unavailable")
        return SynthesizedAudio(audio=text.encode("utf-8"), mime_type="audio/mpeg")

    async def close(self) -> None:
        self.closed = True


class FakeAudioOutput(AudioOutput):
    """Plays until finish()/fail() is called, or returns at once with auto_finish."""

    def __init__(self, auto_finish: bool = False) -> None:
        self.auto_finish = auto_finish
        self.plays: List[bytes] = []
        self.stops = 0
        self.active = 0
        self.max_active = 0
        self._done: Optional[asyncio.Future] = None

    @property
    def playing(self) -> bool:
        return self.active > 0

    async def play(self, audio: bytes, mime_type: str) -> None:
        self.plays.append(audio)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.auto_finish:
                return
            self._done = asyncio.get_running_loop().create_future()
            await self._done
        finally:
            self.active -= 1

    async def stop(self) -> None:
        self.stops += 1

    def finish(self) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(None)

    def fail(self, message: str = "blocked") -> None:
        if self._done is not None and not self._done.done():
            self._done.set_exception(PlaybackError(message))


class FakeRecognizer(SpeechRecognizer):
    """Recognizer driven by the test. stop() ends the session unless `end_on_stop` is off."""

    name = "fake"

    def __init__(self) -> None:
        super().__init__()
        self.starts: List[int] = []
        self.stops = 0
        self.aborts = 0
        self.audio: List[bytes] = []
        self.fail_start = False
        self.end_on_stop = True

    async def start(self, session_id: int) -> None:
        from src.cashier.stt import SpeechRecognitionError

        if self.fail_start:
            raise SpeechRecognitionError("microphone unavailable")
        self.starts.append(session_id)

    async def stop(self) -> None:
        self.stops += 1
        if self.end_on_stop:
            await self._emit_end()

    async def abort(self) -> None:
        self.aborts += 1

    async def send_audio(self, audio_bytes: bytes) -> None:
        self.audio.append(audio_bytes)

    async def say(self, text: str, final: bool = True) -> None:
        await self._emit_transcript(TranscriptionResult(text=text, is_final=final))

    async def end(self) -> None:
        await self._emit_end()

    async def error(self, message: str = "network") -> None:
        await self._emit_error(message)


def make_test_config(**overrides: Any) -> Config:
    base = Config(
        groq_api_key="test_groq_key",
        elevenlabs_api_key="test_elevenlabs_key",
        early_speech_chars=100,
        silence_guard_seconds=5.0,
        playback_tail_ms=0,
        playback_timeout_seconds=5.0,
    )
    return replace(base, **overrides)


@dataclass
class Rig:
    """A controller wired to fakes."""
    config: Config
    llm: FakeLLM
    provider: FakeTTSProvider
    output: FakeAudioOutput
    recognizer: FakeRecognizer
    capture: SpeechCapture
    player: SpeechPlayer
    store: Any
    controller: TurnController
    events: List[ControllerEvent] = field(default_factory=list)

    def event_types(self) -> List[str]:
        return [e.type for e in self.events]


def build_rig(
    *,
    auto_finish: bool = False,
    tts_fail: bool = False,
    store: Any = None,
    **config_overrides: Any,
) -> Rig:
    config = make_test_config(**config_overrides)
    llm = FakeLLM()
    provider = FakeTTSProvider(fail=tts_fail)
    output = FakeAudioOutput(auto_finish=auto_finish)
    recognizer = FakeRecognizer()
    capture = SpeechCapture(recognizer)
    player = SpeechPlayer(
        provider,
        output,
        tail_seconds=config.playback_tail_ms / 1000.0,
        playback_timeout=config.playback_timeout_seconds,
        max_chars=config.tts_max_chars,
    )
    store = store if store is not None else InMemoryOrderStore()
    events: List[ControllerEvent] = []

    async def on_event(event: ControllerEvent) -> None:
        events.append(event)

    controller = TurnController(
        llm=llm,
        player=player,
        store=store,
        capture=capture,
        config=config,
        on_event=on_event,
    )
    return Rig(
        config=config,
        llm=llm,
        provider=provider,
        output=output,
        recognizer=recognizer,
        capture=capture,
        player=player,
        store=store,
        controller=controller,
        events=events,
    )


@pytest.fixture
def rig_factory() -> Callable[..., Rig]:
    return build_rig


@pytest.fixture
def rig() -> Rig:
    return build_rig()


@pytest.fixture
def test_config() -> Config:
    return make_test_config()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_tts() -> FakeTTSProvider:
    return FakeTTSProvider()


@pytest.fixture
def audio_output() -> FakeAudioOutput:
    return FakeAudioOutput()


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def wait_until():
    """Poll a condition while letting other tasks run."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait_until


RECEIPT_COMPLETE = """Perfect, Sarah! Your order is in.
```json
{
  "type": "order_complete",
  "customer_name": "Sarah",
  "items": [
    {"item_name": "Latte", "size": "small", "temp": "hot", "milk": "whole", "sweetness": "regular",
     "ice_level": "regular", "add_ons": [], "item_price": 4.00, "special_instructions": null},
    {"item_name": "Americano", "size": "small", "temp": "iced", "milk": null, "sweetness": "regular",
     "ice_level": "light", "add_ons": [{"name": "Extra Espresso Shot", "qty": 1, "price": 1.50}],
     "item_price": 2.50, "special_instructions": null}
  ],
  "total_price": 6.50
}
```"""

RECEIPT_UPDATE = """Done, I swapped that for you.
```json
{
  "type": "order_update",
  "customer_name": "Sarah",
  "items": [
    {"item_name": "Cold Brew", "size": "large", "temp": "iced", "milk": null, "sweetness": "less sweet",
     "ice_level": "regular", "add_ons": [], "item_price": 5.25, "special_instructions": "no straw"}
  ],
  "total_price": 5.25
}
```"""


@pytest.fixture
def receipt_complete_text() -> str:
    return RECEIPT_COMPLETE


@pytest.fixture
def receipt_update_text() -> str:
    return RECEIPT_UPDATE


@pytest.fixture
def failing_tts() -> FakeTTSProvider:
    return FakeTTSProvider(fail=True)
