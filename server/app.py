"""
FastAPI server for the voice cashier.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /api/chat: Stream a cashier reply as plain text
- POST /api/tts: Synthesize speech for a piece of text
- WS /ws: One ordering session per connection
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Literal, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
import structlog
import uvicorn

from src.cashier.config import get_config, init_config, ConfigError
from src.cashier.llm import LLMStreamError, get_llm
from src.cashier.tts import create_tts_provider, prepare_speech_text
from src.cashier.tts_providers.base import SynthesisError, TTSProvider

CHAT_ERROR_SUFFIX = "\n\nSorry, I'm having trouble right now. Please try again."


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    chat_requests: int = 0
    tts_requests: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "chat_requests": self.chat_requests,
            "tts_requests": self.tts_requests,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage]


class TTSRequest(BaseModel):
    text: str = ""


_tts_provider: Optional[TTSProvider] = None


def get_tts_provider() -> Optional[TTSProvider]:
    """Get or create the TTS provider for /api/tts (None when disabled)."""
    global _tts_provider

    if _tts_provider is None:
        _tts_provider = create_tts_provider()

    return _tts_provider


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting voice cashier server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        # Validate Groq model at startup
        from src.cashier.llm import initialize_llm
        await initialize_llm()

        from src.cashier.orders import get_order_store
        get_order_store()

        logger.info(
            "Server ready",
            port=config.port,
            llm_provider=config.llm_provider,
            tts_provider=config.tts_provider,
            stt_provider=config.stt_provider,
            order_store=config.order_store,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")

    from src.cashier.orders import close_order_store
    await close_order_store()

    global _tts_provider
    if _tts_provider is not None:
        await _tts_provider.close()
        _tts_provider = None


# Create FastAPI app
app = FastAPI(
    title="Voice Cashier",
    description="Conversational coffee ordering by voice or text",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_connections": metrics.active_connections,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/api/chat")
async def chat(request: Request) -> Response:
    """
    Stream the cashier's reply to a chat history.

    Body: {"messages": [{"role": "user" | "assistant", "content": str}, ...]}
    """
    try:
        body = ChatRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse(status_code=400, content={"error": "messages array required"})

    metrics.chat_requests += 1
    messages = [m.model_dump() for m in body.messages]
    llm = get_llm()

    async def stream() -> AsyncGenerator[str, None]:
        try:
            async for chunk in llm.stream_reply(messages):
                yield chunk
        except LLMStreamError as e:
            logger.error("Chat stream failed", error=str(e))
            metrics.errors += 1
            yield CHAT_ERROR_SUFFIX

    return StreamingResponse(
        stream(),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Content-Type-Options": "nosniff"},
    )


@app.post("/api/tts")
async def tts(request: Request) -> Response:
    """Synthesize speech. Body: {"text": str}."""
    try:
        body = TTSRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse(status_code=400, content={"error": "text is required"})

    config = get_config()
    text = prepare_speech_text(body.text, config.tts_max_chars)
    if not text:
        return JSONResponse(status_code=400, content={"error": "text is required"})

    provider = get_tts_provider()
    if provider is None:
        return JSONResponse(status_code=500, content={"error": "TTS not configured"})

    metrics.tts_requests += 1
    try:
        clip = await provider.synthesize(text)
    except SynthesisError as e:
        logger.error("TTS request failed", error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=502, content={"error": "TTS failed"})

    return Response(
        content=clip.audio,
        media_type=clip.mime_type,
        headers={"Cache-Control": "no-cache"},
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Ordering session WebSocket endpoint.

    Text frames carry JSON protocol messages, binary frames carry microphone
    audio for server-side recognition.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    session_id = f"session_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        session_id=session_id,
        active_connections=metrics.active_connections,
    )

    # Import here to avoid circular imports and speed up startup
    from src.cashier.session import CashierSession

    session = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    try:
        session = CashierSession(send_message)

        # Handle incoming messages
        while True:
            try:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))

                if message.get("bytes") is not None:
                    await session.handle_audio(message["bytes"])
                elif message.get("text") is not None:
                    await session.handle_message(message["text"])

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", session_id=session_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    session_id=session_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            session_id=session_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        # Cleanup
        if session:
            try:
                await session.close()
            except Exception as e:
                logger.error("Error closing session", error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Session ended",
            session_id=session_id,
            active_connections=metrics.active_connections,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
