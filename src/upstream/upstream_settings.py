"""
Upstream Model Configuration

Gemini Live settings for the upstream speech-to-speech link.
Everything here is opaque to the relay and forwarded verbatim in the
setup handshake.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the directory for .env file (project root)
_CONFIG_DIR = Path(__file__).parent.parent.parent


class UpstreamSettings(BaseSettings):
    """
    Settings for the Gemini Live BidiGenerateContent WebSocket.

    Loaded from environment variables when the first upstream link is opened.
    """

    model_config = SettingsConfigDict(
        env_file=_CONFIG_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Accepts GEMINI_API_KEY or GOOGLE_API_KEY
    gemini_api_key: str = Field(default="", validation_alias=AliasChoices("gemini_api_key", "google_api_key"))
    gemini_ws_url: str = (
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
    )
    gemini_model: str = "models/gemini-2.0-flash-live-001"

    # Generation Configuration
    gemini_response_modalities: list[str] = ["audio"]
    gemini_temperature: float = 0.8
    gemini_top_p: float = 0.9
    gemini_top_k: int = 40
    gemini_max_output_tokens: int = 1024
    gemini_candidate_count: int = 1

    # Sent as setup.systemInstruction only when non-empty
    gemini_system_instruction: str = ""

    @property
    def endpoint_url(self) -> str:
        """WebSocket URL with the API key attached as a query parameter."""
        if not self.gemini_api_key:
            return self.gemini_ws_url
        separator = "&" if "?" in self.gemini_ws_url else "?"
        return f"{self.gemini_ws_url}{separator}{urlencode({'key': self.gemini_api_key})}"

    @property
    def generation_config(self) -> dict[str, Any]:
        return {
            "responseModalities": list(self.gemini_response_modalities),
            "temperature": self.gemini_temperature,
            "topP": self.gemini_top_p,
            "topK": self.gemini_top_k,
            "maxOutputTokens": self.gemini_max_output_tokens,
            "candidateCount": self.gemini_candidate_count,
        }


@lru_cache
def get_upstream_settings() -> UpstreamSettings:
    """
    Get cached upstream settings.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return UpstreamSettings()
