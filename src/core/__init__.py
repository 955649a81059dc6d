"""
Core Module

Provides foundational utilities used across the application:
- Configuration management
- Logging setup
- Error taxonomy
"""

from .errors import (
    MalformedUpstreamEvent,
    NotReady,
    RelayError,
    ResponseTimeout,
    TranscodeError,
    TurnInProgress,
    UpstreamNotReady,
    UpstreamTransportError,
)
from .logger import get_logger, setup_logging
from .settings import Settings, get_settings

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Logging
    "get_logger",
    "setup_logging",
    # Errors
    "RelayError",
    "TranscodeError",
    "NotReady",
    "UpstreamNotReady",
    "TurnInProgress",
    "UpstreamTransportError",
    "ResponseTimeout",
    "MalformedUpstreamEvent",
]
