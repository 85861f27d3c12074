"""
Turn controller for the voice cashier.

Single owner of whose turn it is and which resource (microphone, model
stream, speaker) may be active. Everything else reports into it:

    capture final ──► submit_input ──► model stream ──► early speech
                                            │
                                            ▼
                              receipt? ──► order store
                                            │
              speech natural end ──► reactivate listening (or defer)

Each customer turn runs in its own task stamped with a generation number.
A newer turn cancels the older task, its timers and its speech before doing
anything else, and effects from a stale generation are dropped.
"""

import asyncio
import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.cashier.config import get_config
from src.cashier.llm import (
    CashierLLM,
    ConversationTurn,
    LLMStreamError,
    ResponseStreamConsumer,
    Role,
    to_model_messages,
)
from src.cashier.orders import OrderStore, PersistenceError
from src.cashier.receipt import OrderReceipt, ReceiptKind, extract_receipt, strip_receipt_block
from src.cashier.stt import SpeechCapture
from src.cashier.tts import SpeechPlayer

logger = structlog.get_logger(__name__)

FALLBACK_ERROR_TEXT = "Something went wrong on my end. Give me a second and try again."
EMPTY_REPLY_TEXT = "Sorry about that, could you repeat your order?"
MODIFY_PROMPT_TEXT = "Sure, what would you like to change?"


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    STREAMING_RESPONSE = "streaming_response"
    SPEAKING = "speaking"
    ORDER_COMPLETE = "order_complete"
    MODIFYING_ORDER = "modifying_order"


class PendingTransition(str, Enum):
    """A transition queued while the model stream is still open."""
    REACTIVATE_LISTENING = "reactivate_listening"


@dataclass
class ControllerState:
    """Authoritative turn-taking state. Only the controller mutates it."""
    phase: TurnState = TurnState.IDLE
    voice_mode: bool = True
    muted: bool = False
    responding: bool = False
    listening: bool = False
    order_complete: bool = False
    modifying_order_id: Optional[str] = None
    modifying_order_number: Optional[int] = None
    modifying_receipt_turn_id: Optional[str] = None
    speaking_turn_id: Optional[str] = None
    pending_transition: Optional[PendingTransition] = None
    turn_generation: int = 0


@dataclass
class ControllerEvent:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[ControllerEvent], Awaitable[None]]


class TurnController:
    """
    Orchestrates capture, streaming, playback and persistence for one
    ordering conversation.
    """

    def __init__(
        self,
        *,
        llm: CashierLLM,
        player: SpeechPlayer,
        store: OrderStore,
        capture: Optional[SpeechCapture] = None,
        config: Optional[Any] = None,
        on_event: Optional[EventSink] = None,
    ):
        self.config = config or get_config()
        self.llm = llm
        self.player = player
        self.store = store
        self.capture = capture
        self._on_event = on_event

        self.state = ControllerState()
        self._turns: List[ConversationTurn] = []
        self._streaming_turn: Optional[ConversationTurn] = None

        self._turn_task: Optional[asyncio.Task] = None
        self._speech_task: Optional[asyncio.Task] = None
        self._silence_task: Optional[asyncio.Task] = None
        self._speech_token = 0
        self._persisting = False

        if capture is not None:
            capture.on_interim = self._on_interim_transcript
            capture.on_final = self._on_final_transcript
            capture.on_no_speech = self._on_listening_ended

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def turns(self) -> List[ConversationTurn]:
        """Finalized turns, in creation order."""
        return list(self._turns)

    @property
    def streaming_turn(self) -> Optional[ConversationTurn]:
        return self._streaming_turn

    @property
    def history(self) -> List[Dict[str, str]]:
        return to_model_messages(self._turns)

    @property
    def phase(self) -> TurnState:
        return self.state.phase

    @property
    def turn_task(self) -> Optional[asyncio.Task]:
        return self._turn_task

    def _speech_enabled(self) -> bool:
        return self.state.voice_mode and not self.state.muted

    # ------------------------------------------------------------------
    # Events and phase
    # ------------------------------------------------------------------

    async def _emit(self, event_type: str, **payload: Any) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(ControllerEvent(type=event_type, payload=payload))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Event sink failed", event_type=event_type, error=str(e))

    def _derive_phase(self) -> TurnState:
        s = self.state
        if s.listening:
            return TurnState.LISTENING
        if s.speaking_turn_id is not None:
            return TurnState.SPEAKING
        if s.responding:
            return TurnState.STREAMING_RESPONSE
        if s.order_complete:
            return TurnState.ORDER_COMPLETE
        if s.modifying_order_id is not None:
            return TurnState.MODIFYING_ORDER
        return TurnState.IDLE

    async def _settle(self) -> None:
        phase = self._derive_phase()
        if phase == self.state.phase:
            return
        previous = self.state.phase
        self.state.phase = phase
        logger.info("Turn state", previous=previous.value, current=phase.value)
        await self._emit("state", previous=previous.value, state=phase.value)

    async def _add_turn(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)
        await self._emit("turn_added", turn=turn.to_payload(), streaming=False)

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    async def start(self, voice_mode: bool = True) -> None:
        """Open a fresh conversation with the greeting."""
        self.state.voice_mode = voice_mode
        await self._reset()
        await self._greet()

    async def new_order(self) -> None:
        """Reset to a fresh conversation. Pending intents and timers are dropped."""
        logger.info("New order requested")
        await self._reset()
        await self._greet()

    async def close(self) -> None:
        await self._preempt()
        self.state.responding = False
        self._streaming_turn = None
        await self._settle()

    async def _reset(self) -> None:
        await self._preempt()
        self._turns = []
        self._streaming_turn = None
        self.state.responding = False
        self.state.order_complete = False
        self.state.modifying_order_id = None
        self.state.modifying_order_number = None
        self.state.modifying_receipt_turn_id = None
        await self._emit("reset")
        await self._settle()

    async def _greet(self) -> None:
        greeting = ConversationTurn(
            role=Role.CASHIER,
            display_text=self.config.greeting,
            include_in_history=False,
        )
        await self._add_turn(greeting)
        if self._speech_enabled():
            self._start_speech(greeting.turn_id, greeting.display_text)

    async def _preempt(self) -> None:
        """Cancel the current turn, its timers, its speech and the microphone."""
        self.state.pending_transition = None
        self._cancel_silence_guard()

        task = self._turn_task
        self._turn_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            if self._persisting:
                # The order write is already under way; let the turn resolve.
                await asyncio.wait({task})
                self.state.turn_generation += 1
            else:
                self.state.turn_generation += 1
                task.cancel()
                await asyncio.wait({task})
        else:
            self.state.turn_generation += 1

        await self._stop_speech()
        await self._halt_listening()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def submit_input(self, text: str) -> Optional[asyncio.Task]:
        """
        Start a new customer turn from a final transcript or typed text.

        Returns the task running the cashier's reply, or None for blank input.
        """
        text = (text or "").strip()
        if not text:
            return None

        await self._preempt()

        customer = ConversationTurn(role=Role.CUSTOMER, display_text=text)
        await self._add_turn(customer)
        logger.info("Customer turn", text=text[:80], generation=self.state.turn_generation)

        self.state.responding = True
        await self._emit("typing", active=True)
        await self._settle()

        self._turn_task = asyncio.create_task(self._run_turn(self.state.turn_generation))
        return self._turn_task

    async def start_listening(self) -> None:
        """Manual microphone activation. Cancels any queued reactivation."""
        self.state.pending_transition = None
        self._cancel_silence_guard()
        await self._stop_speech()
        await self._activate_listening()

    async def stop_listening(self) -> None:
        """Manual stop. Whatever was heard so far is still submitted."""
        self.state.pending_transition = None
        await self._stop_capture()

    async def set_muted(self, muted: bool) -> None:
        self.state.muted = muted
        self.state.pending_transition = None
        if muted:
            await self._stop_speech()
        logger.info("Mute changed", muted=muted)
        await self._emit("muted", muted=muted)
        await self._settle()

    async def set_voice_mode(self, enabled: bool) -> None:
        self.state.voice_mode = enabled
        self.state.pending_transition = None
        if not enabled:
            await self._stop_speech()
            await self._halt_listening()
        logger.info("Voice mode changed", voice_mode=enabled)
        await self._emit("voice_mode", enabled=enabled)
        await self._settle()

    async def modify_order(self) -> bool:
        """
        Reopen the completed order for changes.

        Returns False when there is no saved order to modify.
        """
        if not self.state.order_complete:
            return False

        receipt_turn = next(
            (t for t in reversed(self._turns) if t.receipt is not None and t.order_id),
            None,
        )
        if receipt_turn is None:
            logger.warning("Modify requested but no saved order is known")
            return False

        await self._preempt()

        self.state.order_complete = False
        self.state.modifying_order_id = receipt_turn.order_id
        self.state.modifying_order_number = receipt_turn.order_number
        self.state.modifying_receipt_turn_id = receipt_turn.turn_id
        logger.info(
            "Modifying order",
            order_id=receipt_turn.order_id,
            order_number=receipt_turn.order_number,
        )

        prompt = ConversationTurn(role=Role.CASHIER, display_text=MODIFY_PROMPT_TEXT)
        await self._add_turn(prompt)
        await self._settle()

        if self._speech_enabled():
            self._start_speech(prompt.turn_id, prompt.display_text)
        return True

    async def replay(self, turn_id: str) -> bool:
        """Speak a finalized cashier turn again."""
        turn = next((t for t in self._turns if t.turn_id == turn_id), None)
        if turn is None or turn.role != Role.CASHIER or not turn.display_text:
            return False

        self.state.pending_transition = None
        self._cancel_silence_guard()
        await self._stop_speech()
        await self._halt_listening()
        self._start_speech(turn.turn_id, turn.display_text)
        return True

    # ------------------------------------------------------------------
    # Listening
    # ------------------------------------------------------------------

    async def _activate_listening(self) -> None:
        if self.capture is None:
            return

        self._cancel_silence_guard()
        self.state.listening = True
        started = await self.capture.start()
        if not started:
            self.state.listening = False
            await self._settle()
            return

        session_id = self.capture.session_id
        self._silence_task = asyncio.create_task(self._silence_guard(session_id))
        await self._emit("listening", active=True)
        await self._settle()

    async def _halt_listening(self) -> None:
        self._cancel_silence_guard()
        if self.capture is not None:
            await self.capture.abort()
        if self.state.listening:
            self.state.listening = False
            await self._emit("listening", active=False)
            await self._settle()

    async def _stop_capture(self) -> None:
        """
        Ask the engine to finish and leave Listening at once.

        The engine may deliver its final transcript later; that still submits.
        """
        self._cancel_silence_guard()
        if self.capture is not None:
            await self.capture.stop()
        if self.state.listening:
            self.state.listening = False
            await self._emit("listening", active=False)
            await self._settle()

    def _cancel_silence_guard(self) -> None:
        task = self._silence_task
        self._silence_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _silence_guard(self, session_id: int) -> None:
        await asyncio.sleep(self.config.silence_guard_seconds)

        if self.capture is None or self.capture.session_id != session_id:
            return
        if self._silence_task is asyncio.current_task():
            self._silence_task = None

        logger.info("Silence guard expired", session_id=session_id)
        await self._stop_capture()

    async def _on_interim_transcript(self, text: str) -> None:
        await self._emit("transcript", text=text, final=False)

    async def _on_final_transcript(self, text: str) -> None:
        self._cancel_silence_guard()
        await self._emit("transcript", text=text, final=True)
        if self.state.listening:
            self.state.listening = False
            await self._emit("listening", active=False)
        await self.submit_input(text)

    async def _on_listening_ended(self) -> None:
        self._cancel_silence_guard()
        if self.state.listening:
            self.state.listening = False
            await self._emit("listening", active=False)
        await self._settle()

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------

    def _start_speech(self, turn_id: str, text: str) -> None:
        self._speech_token += 1
        self.state.speaking_turn_id = turn_id
        self._speech_task = asyncio.create_task(
            self._speak(self._speech_token, self.state.turn_generation, turn_id, text)
        )

    async def _speak(self, token: int, generation: int, turn_id: str, text: str) -> None:
        await self._emit("speaking", turn_id=turn_id, active=True)
        await self._settle()
        on_finished = functools.partial(self._on_speech_finished, token, generation, turn_id)
        await self.player.speak(text, on_finished=on_finished)

    async def _stop_speech(self) -> None:
        self._speech_token += 1
        await self.player.stop()

        task = self._speech_task
        self._speech_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        turn_id = self.state.speaking_turn_id
        if turn_id is not None:
            self.state.speaking_turn_id = None
            await self._emit("speaking", turn_id=turn_id, active=False)
            await self._settle()

    async def _on_speech_finished(self, token: int, generation: int, turn_id: str) -> None:
        """Natural end of playback (including soft failures)."""
        if token != self._speech_token or generation != self.state.turn_generation:
            return

        if self.state.speaking_turn_id == turn_id:
            self.state.speaking_turn_id = None
            await self._emit("speaking", turn_id=turn_id, active=False)

        s = self.state
        if s.order_complete or not s.voice_mode or s.muted:
            await self._settle()
            return

        if s.responding:
            s.pending_transition = PendingTransition.REACTIVATE_LISTENING
            logger.debug("Speech ended while streaming, reactivation deferred")
            await self._settle()
            return

        await self._activate_listening()
        await self._settle()

    async def _drain_pending(self) -> None:
        pending = self.state.pending_transition
        self.state.pending_transition = None

        if pending != PendingTransition.REACTIVATE_LISTENING:
            return

        s = self.state
        if s.voice_mode and not s.muted and not s.order_complete:
            logger.debug("Honouring deferred reactivation")
            await self._activate_listening()

    # ------------------------------------------------------------------
    # The cashier's reply
    # ------------------------------------------------------------------

    async def _run_turn(self, generation: int) -> None:
        consumer = ResponseStreamConsumer(
            early_speech_chars=self.config.early_speech_chars,
            speech_enabled=self._speech_enabled,
            on_text=self._on_stream_text,
            on_early_speech=self._on_early_speech,
        )
        messages = to_model_messages(self._turns)

        try:
            full_text = await consumer.consume(self.llm.stream_reply(messages))
            await self._finish_reply(full_text, speech_started=consumer.speech_triggered)
        except asyncio.CancelledError:
            await self._discard_streaming_turn()
            raise
        except LLMStreamError as e:
            logger.error("Reply stream failed", error=str(e), generation=generation)
            await self._fail_turn()
        except Exception as e:
            logger.exception("Turn failed", error=str(e), generation=generation)
            await self._fail_turn()
        finally:
            self._persisting = False
            if generation == self.state.turn_generation:
                if self._turn_task is asyncio.current_task():
                    self._turn_task = None
                self.state.responding = False
                await self._emit("typing", active=False)
                await self._drain_pending()
                await self._settle()

    async def _on_stream_text(self, full_text: str) -> None:
        display = strip_receipt_block(full_text)
        turn = self._streaming_turn

        if turn is None:
            turn = ConversationTurn(role=Role.CASHIER, display_text=display, raw_text=full_text)
            self._streaming_turn = turn
            await self._emit("typing", active=False)
            await self._emit("turn_added", turn=turn.to_payload(), streaming=True)
            return

        turn.display_text = display
        turn.raw_text = full_text
        await self._emit("turn_updated", turn_id=turn.turn_id, text=display)

    def _on_early_speech(self, spoken: str) -> None:
        turn = self._streaming_turn
        if turn is None or not spoken:
            return
        logger.info("Early speech", turn_id=turn.turn_id, chars=len(spoken))
        self._start_speech(turn.turn_id, spoken)

    async def _finish_reply(self, full_text: str, *, speech_started: bool) -> None:
        turn = self._streaming_turn

        if turn is None or not full_text.strip():
            logger.warning("Empty reply from model")
            await self._discard_streaming_turn()
            await self._add_turn(ConversationTurn(role=Role.CASHIER, display_text=EMPTY_REPLY_TEXT))
            return

        display, receipt = extract_receipt(full_text)
        turn.display_text = display
        turn.raw_text = full_text

        if receipt is not None:
            await self._apply_receipt(turn, receipt)

        self._streaming_turn = None
        self._turns.append(turn)
        await self._emit("turn_finalized", turn=turn.to_payload())

        if not speech_started and self._speech_enabled() and display.strip():
            self._start_speech(turn.turn_id, display)

    async def _apply_receipt(self, turn: ConversationTurn, receipt: OrderReceipt) -> None:
        if not receipt.total_matches_items:
            logger.warning(
                "Receipt total differs from item sum",
                stated_total=str(receipt.total_price),
                items_total=str(receipt.items_total),
            )

        order_id = self.state.modifying_order_id
        if order_id is None and receipt.kind == ReceiptKind.UPDATE:
            logger.warning("Order update received with no order being modified")
            return

        self._persisting = True
        try:
            if order_id is not None:
                await self.store.update_order(order_id, receipt.items, receipt.total_price)
                turn.order_id = order_id
                turn.order_number = self.state.modifying_order_number
            else:
                saved = await self.store.create_order(receipt)
                turn.order_id = saved.order_id
                turn.order_number = saved.order_number
        except PersistenceError as e:
            logger.error("Order persistence failed", error=str(e), order_id=order_id)
        except Exception as e:
            logger.exception("Order persistence error", error=str(e), order_id=order_id)
        finally:
            self._persisting = False

        turn.receipt = receipt
        logger.info(
            "Order receipt",
            kind=receipt.kind.value,
            order_id=turn.order_id,
            order_number=turn.order_number,
            total=str(receipt.total_price),
        )

        self.state.order_complete = True
        self.state.modifying_order_id = None
        self.state.modifying_order_number = None
        self.state.modifying_receipt_turn_id = None
        self.state.pending_transition = None
        await self._halt_listening()

    async def _discard_streaming_turn(self) -> None:
        turn = self._streaming_turn
        self._streaming_turn = None
        if turn is not None:
            await self._emit("turn_discarded", turn_id=turn.turn_id)

    async def _fail_turn(self) -> None:
        await self._discard_streaming_turn()
        self.state.pending_transition = None
        await self._stop_speech()
        await self._add_turn(ConversationTurn(role=Role.CASHIER, display_text=FALLBACK_ERROR_TEXT))
