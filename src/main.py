"""
Voice Relay Server

Relays browser voice captures to the Gemini Live API and returns each spoken
reply as a single playable WAV over the same WebSocket.

Usage:
    uvicorn main:app --host 0.0.0.0 --port 3000 --reload

Or run directly:
    python main.py
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat import get_session_router
from core.logger import get_logger, setup_logging
from core.settings import Settings, get_settings
from routers import chat_router, status_router
from routers.status_router import websocket_url
from upstream import get_upstream_settings

logger = get_logger(__name__)

PROTOCOL_DESCRIPTION = """
Turn-based voice relay between a browser and the Gemini Live API.

## WebSocket Protocol

Connect to `/` (or `/ws`).

### Client → Server Messages

- `{"realtimeInput": {"audio": "<base64>"}}` - One finished capture (WebM/Opus or any ffmpeg-readable format)

### Server → Client Messages

- binary frame - The complete reply as a WAV file
- `{"type": "autoRestart", "message": "..."}` - Reply delivered, resume listening
- `{"type": "error", "error": "..."}` - Recoverable error, resume listening
- `{"error": "..."}` - Request failed, capture again when ready
"""


def _log_startup(settings: Settings) -> None:
    upstream_settings = get_upstream_settings()
    logger.info("=" * 60)
    logger.info("Voice Relay Starting")
    logger.info(f"WebSocket endpoint: {websocket_url(settings)}")
    logger.info(f"Upstream model: {upstream_settings.gemini_model}")
    logger.info(
        f"Turn timing: deadline {settings.response_timeout_s}s, turnComplete grace {settings.turn_complete_grace_s}s"
    )
    logger.info(f"Transcoder: {settings.ffmpeg_path} -> PCM {settings.input_sample_rate}Hz")
    if not upstream_settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; the upstream will reject connections")
    logger.info("=" * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup; close every live session on shutdown."""
    settings = get_settings()
    setup_logging("DEBUG" if settings.debug else "INFO")
    _log_startup(settings)

    yield

    session_router = get_session_router()
    logger.info(f"Shutting down, closing {session_router.session_count} session(s)")
    await session_router.close_all()


def create_app(settings: Settings) -> FastAPI:
    application = FastAPI(
        title="Voice Relay",
        description=PROTOCOL_DESCRIPTION,
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(status_router)
    application.include_router(chat_router)
    return application


app = create_app(get_settings())


if __name__ == "__main__":
    settings = get_settings()

    # Configure logging BEFORE uvicorn starts
    # This ensures we control the handlers, not uvicorn
    setup_logging("DEBUG" if settings.debug else "INFO")

    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        reload=False,  # Reload doesn't work with app object, use uvicorn CLI for dev
        log_level="debug" if settings.debug else "info",
        log_config=None,  # Prevent uvicorn from overwriting our logging config
    )
