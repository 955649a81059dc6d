"""
Tests for the Gemini Live wire protocol helpers and upstream settings.
"""

import base64
import sys
from pathlib import Path

import orjson
import pytest

# Add project src to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from core.errors import MalformedUpstreamEvent  # noqa: E402
from upstream import (  # noqa: E402
    UpstreamSettings,
    build_media_message,
    build_setup_message,
    parse_sample_rate,
    parse_upstream_event,
)


def _part(data: bytes, mime: str = "audio/pcm;rate=24000") -> dict:
    return {"inlineData": {"mimeType": mime, "data": base64.b64encode(data).decode()}}


def test_parse_sample_rate():
    assert parse_sample_rate("audio/pcm;rate=24000") == 24000
    assert parse_sample_rate("audio/pcm; rate=16000") == 16000
    assert parse_sample_rate("audio/pcm") == 24000
    assert parse_sample_rate(None, default=8000) == 8000
    assert parse_sample_rate("audio/pcm;rate=abc") == 24000
    assert parse_sample_rate("audio/pcm;rate=0") == 24000


def test_setup_message_shape():
    message = build_setup_message("models/x", {"temperature": 0.5})
    assert message == {"setup": {"model": "models/x", "generationConfig": {"temperature": 0.5}}}

    with_instruction = build_setup_message("models/x", {}, "Be brief")
    assert with_instruction["setup"]["systemInstruction"] == {"parts": [{"text": "Be brief"}]}


def test_media_message_shape():
    message = build_media_message(b"\x01\x02", 16000)
    chunk = message["realtimeInput"]["mediaChunks"][0]
    assert chunk["mimeType"] == "audio/pcm;rate=16000"
    assert base64.b64decode(chunk["data"]) == b"\x01\x02"


def test_setup_complete_empty_object_counts():
    assert parse_upstream_event(b'{"setupComplete": {}}').setup_complete
    assert parse_upstream_event(b'{"setupComplete": true}').setup_complete
    assert not parse_upstream_event(b'{"serverContent": {}}').setup_complete


def test_fragments_in_part_order_with_rates():
    raw = orjson.dumps(
        {
            "serverContent": {
                "modelTurn": {"parts": [_part(b"a" * 100), {"text": "hi"}, _part(b"b" * 150, "audio/pcm;rate=16000")]},
                "generationComplete": True,
            }
        }
    )

    event = parse_upstream_event(raw)

    assert [len(f.data) for f in event.fragments] == [100, 150]
    assert [f.sample_rate for f in event.fragments] == [24000, 16000]
    assert event.generation_complete
    assert not event.turn_complete
    assert not event.interrupted


def test_top_level_model_turn_is_accepted():
    event = parse_upstream_event(orjson.dumps({"modelTurn": {"parts": [_part(b"x" * 4, "audio/pcm")]}}))
    assert len(event.fragments) == 1
    assert event.fragments[0].sample_rate == 24000


def test_turn_signals():
    event = parse_upstream_event(orjson.dumps({"serverContent": {"turnComplete": True, "interrupted": True}}))
    assert event.turn_complete
    assert event.interrupted


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2, 3]",
        b'{"serverContent": "oops"}',
        b'{"serverContent": {"modelTurn": {"parts": "oops"}}}',
        b'{"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": "@@@"}}]}}}',
    ],
)
def test_malformed_messages_raise(raw):
    with pytest.raises(MalformedUpstreamEvent):
        parse_upstream_event(raw)


def test_upstream_settings_forward_generation_config():
    settings = UpstreamSettings(gemini_api_key="secret", gemini_temperature=0.3, gemini_top_k=10)

    assert settings.endpoint_url.endswith("?key=secret")
    assert settings.generation_config == {
        "responseModalities": ["audio"],
        "temperature": 0.3,
        "topP": 0.9,
        "topK": 10,
        "maxOutputTokens": 1024,
        "candidateCount": 1,
    }


def test_upstream_settings_accept_google_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "from-google")
    assert UpstreamSettings().gemini_api_key == "from-google"
