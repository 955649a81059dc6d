"""
Application Configuration

Centralized configuration using Pydantic Settings for type-safe
environment variable management with validation.

This module contains ONLY vendor-agnostic settings.
Upstream model settings (Gemini Live) live in upstream/upstream_settings.py.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the directory containing this file, then go up to the project root
_CONFIG_DIR = Path(__file__).parent.parent.parent


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.
    """

    model_config = SettingsConfigDict(
        env_file=_CONFIG_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    server_host: str = "0.0.0.0"
    server_port: int = 3000
    use_ssl: bool = False
    debug: bool = False
    cors_allowed_origins: str = "*"

    # Turn Handling
    # Ceiling on how long a submitted capture may wait for a reply (seconds)
    response_timeout_s: float = 15.0
    # Wait for trailing fragments after turnComplete before flushing (seconds)
    turn_complete_grace_s: float = 0.5
    # Diagnostic interaction history kept per session
    rolling_context_size: int = 10

    # Audio Configuration
    # Raw PCM sent upstream: s16le mono at this rate
    input_sample_rate: int = 16000
    # Used when a fragment's mimeType carries no usable rate
    default_output_sample_rate: int = 24000
    ffmpeg_path: str = "ffmpeg"
    transcode_timeout_s: float = 10.0
    transcode_temp_dir: str | None = None

    # Upstream Link
    upstream_max_reconnects: int = 1
    # A link must stay ready this long before a later drop is retried again
    upstream_stable_after_s: float = 30.0
    upstream_open_timeout_s: float = 10.0
    # How long a capture waits for the handshake before being rejected
    upstream_ready_wait_s: float = 5.0

    # Client Conversation Controller (voice activity detection)
    client_vad_energy_threshold: float = 0.02  # RMS level, full scale = 1.0
    client_vad_silence_ms: int = 2000
    client_vad_min_speech_ms: int = 800
    client_vad_window_ms: int = 20
    client_processing_timeout_s: float = 20.0

    @model_validator(mode="after")
    def _check_turn_timing(self) -> "Settings":
        if self.turn_complete_grace_s >= self.response_timeout_s:
            raise ValueError("turn_complete_grace_s must be shorter than response_timeout_s")
        if self.rolling_context_size < 1:
            raise ValueError("rolling_context_size must be at least 1")
        return self

    @property
    def allowed_origins(self) -> list[str]:
        """Parse allowed CORS origins from comma-separated string."""
        if not self.cors_allowed_origins:
            return []
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache to ensure settings are only loaded once
    and reused throughout the application lifecycle.
    """
    return Settings()
