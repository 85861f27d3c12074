"""
Configuration management for the voice cashier.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # LLM Provider (Groq/OpenAI)
    # - Default is Groq via its OpenAI-compatible endpoint.
    # - Set LLM_PROVIDER=openai + OPENAI_API_KEY/OPENAI_MODEL to use ChatGPT.
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 2048
    llm_temperature: float = 0.7

    # TTS
    tts_provider: str = "elevenlabs"  # "elevenlabs" | "openai" | "none"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model_id: str = "eleven_monolingual_v1"
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    tts_max_chars: int = 500

    # STT
    # - client: the browser runs speech recognition and relays transcripts
    # - deepgram: the browser streams audio, Deepgram transcribes it
    stt_provider: str = "client"  # "client" | "deepgram"
    deepgram_api_key: str = ""
    deepgram_language: str = "en-US"

    # Order store
    order_store: str = "memory"  # "memory" | "supabase"
    supabase_url: str = ""
    supabase_key: str = ""

    # Cashier persona
    agent_name: str = "Alex"
    company_name: str = "NYC Coffee"
    greeting_text: str = ""
    system_prompt: str = ""
    system_prompt_path: str = ""
    menu_path: str = ""

    # Turn-taking
    early_speech_chars: int = 100
    silence_guard_seconds: float = 5.0
    playback_tail_ms: int = 400
    playback_timeout_seconds: float = 60.0

    @property
    def greeting(self) -> str:
        """Greeting spoken at the start of every order."""
        if self.greeting_text:
            return self.greeting_text
        return (
            f"Hey there! I'm {self.agent_name}, your cashier at {self.company_name}. "
            "You can check out our menu, or just tell me what you're in the mood for. "
            "I'm happy to help you pick something out!"
        )

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        tts = (self.tts_provider or "elevenlabs").strip().lower()
        if tts not in ("elevenlabs", "openai", "none"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'elevenlabs', 'openai' or 'none'."
            )
        if tts == "elevenlabs" and not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if tts == "openai" and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        stt = (self.stt_provider or "client").strip().lower()
        if stt not in ("client", "deepgram"):
            raise ConfigError(
                f"Invalid STT_PROVIDER '{self.stt_provider}'. Expected 'client' or 'deepgram'."
            )
        if stt == "deepgram" and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        store = (self.order_store or "memory").strip().lower()
        if store not in ("memory", "supabase"):
            raise ConfigError(
                f"Invalid ORDER_STORE '{self.order_store}'. Expected 'memory' or 'supabase'."
            )
        if store == "supabase":
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_key:
                missing.append("SUPABASE_KEY")

        if self.early_speech_chars <= 0:
            raise ConfigError("EARLY_SPEECH_CHARS must be positive.")
        if self.silence_guard_seconds <= 0:
            raise ConfigError("SILENCE_GUARD_SECONDS must be positive.")

        # Deduplicate (OPENAI_API_KEY can be required by both LLM and TTS).
        missing = list(dict.fromkeys(missing))
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            tts_provider=self.tts_provider,
            stt_provider=self.stt_provider,
            order_store=self.order_store,
            agent_name=self.agent_name,
            company_name=self.company_name,
            menu_path=self.menu_path or "NOT SET",
            early_speech_chars=self.early_speech_chars,
            silence_guard_seconds=self.silence_guard_seconds,
            playback_tail_ms=self.playback_tail_ms,
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
            deepgram_key_set=bool(self.deepgram_api_key),
            supabase_key_set=bool(self.supabase_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 2048),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "elevenlabs").strip().lower(),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_monolingual_v1"),
        elevenlabs_base_url=os.getenv("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        tts_max_chars=_get_int("TTS_MAX_CHARS", 500),

        # STT
        stt_provider=os.getenv("STT_PROVIDER", "client").strip().lower(),
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),

        # Order store
        order_store=os.getenv("ORDER_STORE", "memory").strip().lower(),
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_key=os.getenv("SUPABASE_KEY", ""),

        # Cashier persona
        agent_name=os.getenv("AGENT_NAME", "Alex"),
        company_name=os.getenv("COMPANY_NAME", "NYC Coffee"),
        greeting_text=os.getenv("GREETING_TEXT", ""),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        system_prompt_path=os.getenv("SYSTEM_PROMPT_PATH", ""),
        menu_path=os.getenv("MENU_PATH", ""),

        # Turn-taking
        early_speech_chars=_get_int("EARLY_SPEECH_CHARS", 100),
        silence_guard_seconds=_get_float("SILENCE_GUARD_SECONDS", 5.0),
        playback_tail_ms=_get_int("PLAYBACK_TAIL_MS", 400),
        playback_timeout_seconds=_get_float("PLAYBACK_TIMEOUT_SECONDS", 60.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
