"""
Gemini Live wire protocol.

Builders for the outbound setup/media messages and a parser that turns one
inbound message into an UpstreamEvent. The parser does not interpret turn
semantics; it only extracts the fields the relay reacts to.
"""

import base64
import binascii
import re
from dataclasses import dataclass, field
from typing import Any

import orjson

from core.errors import MalformedUpstreamEvent

DEFAULT_OUTPUT_SAMPLE_RATE = 24000

_RATE_PATTERN = re.compile(r"rate=(\d+)")


@dataclass(frozen=True)
class ResponseFragment:
    """One streamed chunk of raw PCM from a model turn."""

    data: bytes
    sample_rate: int
    mime_type: str | None = None


@dataclass
class UpstreamEvent:
    """Fields of one inbound upstream message the relay cares about."""

    setup_complete: bool = False
    fragments: list[ResponseFragment] = field(default_factory=list)
    generation_complete: bool = False
    turn_complete: bool = False
    interrupted: bool = False


def parse_sample_rate(mime_type: str | None, default: int = DEFAULT_OUTPUT_SAMPLE_RATE) -> int:
    """Extract ``rate=<int>`` from a mime type such as ``audio/pcm;rate=24000``."""
    if not mime_type:
        return default
    match = _RATE_PATTERN.search(mime_type)
    if not match:
        return default
    rate = int(match.group(1))
    return rate if rate > 0 else default


def build_setup_message(
    model: str,
    generation_config: dict[str, Any],
    system_instruction: str | None = None,
) -> dict[str, Any]:
    setup: dict[str, Any] = {"model": model, "generationConfig": generation_config}
    if system_instruction:
        setup["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    return {"setup": setup}


def build_media_message(pcm: bytes, sample_rate: int) -> dict[str, Any]:
    return {
        "realtimeInput": {
            "mediaChunks": [
                {
                    "mimeType": f"audio/pcm;rate={sample_rate}",
                    "data": base64.b64encode(pcm).decode("ascii"),
                }
            ]
        }
    }


def _as_dict(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedUpstreamEvent(f"{what} is not an object")
    return value


def _parse_fragments(model_turn: dict[str, Any], default_rate: int) -> list[ResponseFragment]:
    parts = model_turn.get("parts") or []
    if not isinstance(parts, list):
        raise MalformedUpstreamEvent("modelTurn.parts is not a list")

    fragments = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline_data = part.get("inlineData")
        if not isinstance(inline_data, dict):
            continue
        b64 = inline_data.get("data")
        if not b64:
            continue
        try:
            data = base64.b64decode(b64, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise MalformedUpstreamEvent(f"inlineData is not valid base64: {e}") from e
        mime_type = inline_data.get("mimeType")
        if not isinstance(mime_type, str):
            mime_type = None
        fragments.append(
            ResponseFragment(data=data, sample_rate=parse_sample_rate(mime_type, default_rate), mime_type=mime_type)
        )
    return fragments


def parse_upstream_event(raw: str | bytes, default_rate: int = DEFAULT_OUTPUT_SAMPLE_RATE) -> UpstreamEvent:
    """
    Parse one inbound upstream message.

    Audio parts are read from ``serverContent.modelTurn`` or a top-level
    ``modelTurn``, in part order.

    Raises:
        MalformedUpstreamEvent: If the body is not a JSON object or a field
            has an unexpected shape
    """
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MalformedUpstreamEvent(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise MalformedUpstreamEvent("Upstream message is not an object")

    server_content = _as_dict(message.get("serverContent"), "serverContent")
    model_turn = _as_dict(server_content.get("modelTurn") or message.get("modelTurn"), "modelTurn")

    # Gemini acknowledges with an empty object, so presence is what counts
    setup_complete = message.get("setupComplete") not in (None, False)

    return UpstreamEvent(
        setup_complete=setup_complete,
        fragments=_parse_fragments(model_turn, default_rate),
        generation_complete=bool(server_content.get("generationComplete")),
        turn_complete=bool(server_content.get("turnComplete")),
        interrupted=bool(server_content.get("interrupted")),
    )
