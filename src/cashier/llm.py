"""
Streaming LLM client for the cashier.

Provides:
- Startup model validation
- Streaming response support (Groq or OpenAI, both via the OpenAI SDK)
- Conversation turns and their model-visible history
- Early-speech detection while a reply is still streaming
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.cashier.config import get_config
from src.cashier.prompt import build_system_prompt
from src.cashier.receipt import OrderReceipt, strip_receipt_block

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class LLMStreamError(Exception):
    """Raised when the model stream cannot be opened or breaks mid-way."""
    pass


class Role(str, Enum):
    CUSTOMER = "customer"
    CASHIER = "cashier"


@dataclass
class ConversationTurn:
    """A single customer or cashier contribution to the conversation."""
    role: Role
    display_text: str
    raw_text: str = ""
    receipt: Optional[OrderReceipt] = None
    order_id: Optional[str] = None
    order_number: Optional[int] = None
    include_in_history: bool = True  # False only for the greeting
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.raw_text:
            self.raw_text = self.display_text

    def to_payload(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "role": self.role.value,
            "text": self.display_text,
            "receipt": self.receipt.model_dump(mode="json") if self.receipt else None,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "created_at": self.created_at,
        }


def to_model_messages(turns: List[ConversationTurn]) -> List[Dict[str, str]]:
    """
    Convert turns to the chat format sent to the model.

    - Skips the greeting (shown/spoken only).
    - Uses raw_text so the model sees the receipt blocks it produced.
    - Drops leading assistant messages so history starts with the customer.
    """
    messages = [
        {
            "role": "assistant" if turn.role == Role.CASHIER else "user",
            "content": turn.raw_text,
        }
        for turn in turns
        if turn.include_in_history
    ]

    while messages and messages[0]["role"] == "assistant":
        messages.pop(0)

    return messages


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured Groq model exists.

    Calls GET https://api.groq.com/openai/v1/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Groq API: {e}\n"
                "Check your network connection and GROQ_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate Groq model. API returned status {response.status_code}. "
            "Check your GROQ_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(model_ids)[:10])
        logger.error(
            "Groq model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"GROQ_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update GROQ_MODEL in your .env file."
        )

    logger.info("Groq model validated successfully", model=model_name)
    return True


class CashierLLM:
    """
    Streaming chat client for the cashier persona.

    Uses the OpenAI SDK for both providers; Groq is reached through its
    OpenAI-compatible base URL.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        provider = (config.llm_provider or "groq").strip().lower()
        self.provider = provider

        if provider == "openai":
            self.model = config.openai_model
            self._client = client or AsyncOpenAI(api_key=config.openai_api_key)
        else:
            self.model = config.groq_model
            self._client = client or AsyncOpenAI(
                api_key=config.groq_api_key,
                base_url=GROQ_BASE_URL,
            )

        self._system_prompt = build_system_prompt(config)

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    async def validate_model(self) -> bool:
        """Validate the configured model exists (Groq only)."""
        if self.provider != "groq":
            return True
        return await validate_groq_model(self.config.groq_api_key, self.model)

    async def stream_reply(
        self,
        messages: List[Dict[str, str]],
    ) -> AsyncGenerator[str, None]:
        """
        Stream the cashier's reply to `messages`.

        Closing the generator (or cancelling the consumer) closes the HTTP
        stream, so an abandoned reply stops costing tokens immediately.

        Raises:
            LLMStreamError: if the request fails or the stream breaks.
        """
        request = [{"role": "system", "content": self._system_prompt}, *messages]

        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=request,
                stream=True,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )
        except Exception as e:
            logger.error("LLM request failed", error=str(e), model=self.model)
            raise LLMStreamError(str(e)) from e

        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except Exception as e:
            logger.error("LLM stream failed", error=str(e), model=self.model)
            raise LLMStreamError(str(e)) from e
        finally:
            await stream.close()


class ResponseStreamConsumer:
    """
    Accumulates a streamed reply and fires the early-speech signal at most once.

    After each chunk the receipt-stripped text is measured; once it reaches
    `early_speech_chars` (and speech is enabled at that moment) the stripped
    text is handed to `on_early_speech`.
    """

    def __init__(
        self,
        *,
        early_speech_chars: int,
        speech_enabled: Callable[[], bool],
        on_text: Optional[Callable[[str], Awaitable[None]]] = None,
        on_early_speech: Optional[Callable[[str], None]] = None,
    ):
        self._early_speech_chars = early_speech_chars
        self._speech_enabled = speech_enabled
        self._on_text = on_text
        self._on_early_speech = on_early_speech
        self.full_text = ""
        self.speech_triggered = False
        self.first_chunk_at: Optional[float] = None

    async def consume(self, chunks: AsyncIterator[str]) -> str:
        """Drain `chunks` and return the full text."""
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                if self.first_chunk_at is None:
                    self.first_chunk_at = time.time()
                self.full_text += chunk
                if self._on_text:
                    await self._on_text(self.full_text)
                self._maybe_trigger_speech()
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        return self.full_text

    def _maybe_trigger_speech(self) -> None:
        if self.speech_triggered or self._on_early_speech is None:
            return
        if not self._speech_enabled():
            return

        spoken = strip_receipt_block(self.full_text)
        if len(spoken) < self._early_speech_chars:
            return

        self.speech_triggered = True
        logger.debug("Early speech trigger", chars=len(spoken))
        self._on_early_speech(spoken)


# Singleton instance
_llm_instance: Optional[CashierLLM] = None


def get_llm() -> CashierLLM:
    """Get or create the LLM singleton."""
    global _llm_instance

    if _llm_instance is None:
        _llm_instance = CashierLLM()

    return _llm_instance


async def initialize_llm() -> CashierLLM:
    """
    Initialize and validate the LLM at startup.

    Returns:
        Initialized and validated CashierLLM instance
    """
    llm = get_llm()
    await llm.validate_model()
    return llm
