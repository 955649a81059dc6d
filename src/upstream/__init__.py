"""
Upstream Package

Speaks the Gemini Live bidirectional WebSocket protocol on behalf of one
client session:
- UpstreamLink: connection lifecycle, setup handshake, one reconnection
- protocol: setup/media builders and the inbound event parser
"""

from .protocol import (
    DEFAULT_OUTPUT_SAMPLE_RATE,
    ResponseFragment,
    UpstreamEvent,
    build_media_message,
    build_setup_message,
    parse_sample_rate,
    parse_upstream_event,
)
from .upstream_link import LinkState, UpstreamLink
from .upstream_settings import UpstreamSettings, get_upstream_settings

__all__ = [
    "DEFAULT_OUTPUT_SAMPLE_RATE",
    "LinkState",
    "ResponseFragment",
    "UpstreamEvent",
    "UpstreamLink",
    "UpstreamSettings",
    "build_media_message",
    "build_setup_message",
    "get_upstream_settings",
    "parse_sample_rate",
    "parse_upstream_event",
]
