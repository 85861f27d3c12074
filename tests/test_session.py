"""
Tests for the per-connection session wiring.
"""

import asyncio
import json

import pytest

from src.cashier.orders import InMemoryOrderStore
from src.cashier.session import CashierSession, WebSocketAudioOutput
from src.cashier.stt import ClientRecognizer
from src.cashier.tts import PlaybackError


@pytest.fixture
def sent():
    return []


@pytest.fixture
def session(sent, test_config, fake_llm, fake_tts):
    async def send(message):
        sent.append(json.loads(message))

    return CashierSession(
        send,
        config=test_config,
        llm=fake_llm,
        store=InMemoryOrderStore(),
        tts_provider=fake_tts,
    )


def _of_type(sent, message_type):
    return [m for m in sent if m["type"] == message_type]


class TestWebSocketAudioOutput:
    """Playback acknowledgements keyed by playback id."""

    @pytest.mark.asyncio
    async def test_ack_resolves_play(self, sent, wait_until):
        async def send(message):
            sent.append(json.loads(message))

        output = WebSocketAudioOutput(send)
        play = asyncio.create_task(output.play(b"clip", "audio/mpeg"))
        await wait_until(lambda: len(sent) == 1)

        output.handle_ended(99)
        await asyncio.sleep(0.01)
        assert not play.done()

        output.handle_ended(1)
        await play

    @pytest.mark.asyncio
    async def test_error_ack_raises(self, sent, wait_until):
        async def send(message):
            sent.append(json.loads(message))

        output = WebSocketAudioOutput(send)
        play = asyncio.create_task(output.play(b"clip", "audio/mpeg"))
        await wait_until(lambda: len(sent) == 1)

        output.handle_error(1, "NotAllowedError")

        with pytest.raises(PlaybackError):
            await play

    @pytest.mark.asyncio
    async def test_stop_sends_stop_audio(self, sent, wait_until):
        async def send(message):
            sent.append(json.loads(message))

        output = WebSocketAudioOutput(send)
        play = asyncio.create_task(output.play(b"clip", "audio/mpeg"))
        await wait_until(lambda: len(sent) == 1)

        await output.stop()

        with pytest.raises(asyncio.CancelledError):
            await play
        assert sent[-1] == {"type": "stop_audio", "playback_id": 1}

    @pytest.mark.asyncio
    async def test_send_failure_is_playback_error(self):
        async def send(message):
            raise ConnectionError("socket closed")

        output = WebSocketAudioOutput(send)

        with pytest.raises(PlaybackError):
            await output.play(b"clip", "audio/mpeg")


class TestCashierSession:
    """A full voice round trip over the client protocol."""

    @pytest.mark.asyncio
    async def test_voice_round_trip(self, session, sent, fake_llm, wait_until):
        assert isinstance(session.recognizer, ClientRecognizer)
        fake_llm.queue("One latte, anything else?")

        await session.handle_message('{"type": "start", "voice_mode": true}')
        await wait_until(lambda: len(_of_type(sent, "audio")) == 1)
        greeting_audio = _of_type(sent, "audio")[0]

        await session.handle_message(
            json.dumps({"type": "playback_ended", "playback_id": greeting_audio["playback_id"]})
        )
        await wait_until(lambda: len(_of_type(sent, "listen")) == 1)
        assert _of_type(sent, "listen")[0] == {"type": "listen", "action": "start", "session": 1}

        await session.handle_message('{"type": "transcript", "session": 1, "text": "a latte", "final": true}')
        await session.handle_message('{"type": "listen_end", "session": 1}')

        await wait_until(lambda: len(_of_type(sent, "audio")) == 2)
        events = [m["event"] for m in _of_type(sent, "event")]
        assert "turn_finalized" in events
        assert fake_llm.calls[0] == [{"role": "user", "content": "a latte"}]

        await session.close()

    @pytest.mark.asyncio
    async def test_stale_playback_ack_ignored(self, session, sent, wait_until):
        await session.handle_message('{"type": "start"}')
        await wait_until(lambda: len(_of_type(sent, "audio")) == 1)

        await session.handle_message('{"type": "playback_ended", "playback_id": 42}')
        await asyncio.sleep(0.01)

        assert _of_type(sent, "listen") == []
        assert session.player.is_active

        await session.close()

    @pytest.mark.asyncio
    async def test_invalid_message_gets_error(self, session, sent):
        await session.handle_message("not json")

        assert _of_type(sent, "error")

    @pytest.mark.asyncio
    async def test_modify_without_order_gets_error(self, session, sent):
        await session.handle_message('{"type": "start", "voice_mode": false}')
        await session.handle_message('{"type": "modify_order"}')

        assert _of_type(sent, "error")[0]["message"] == "There is no saved order to modify."

    @pytest.mark.asyncio
    async def test_replay_unknown_turn(self, session, sent):
        await session.handle_message('{"type": "replay", "turn_id": "missing"}')

        assert _of_type(sent, "error")[0]["message"] == "Unknown cashier turn: missing"

    @pytest.mark.asyncio
    async def test_nothing_sent_after_close(self, session, sent):
        await session.close()
        count = len(sent)

        await session.handle_message('{"type": "start", "voice_mode": false}')

        assert len(sent) == count
