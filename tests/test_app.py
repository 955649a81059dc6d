"""
HTTP and WebSocket surface tests through FastAPI's TestClient.

The upstream link is replaced by an echo link that answers every capture with
two audio parts and a generationComplete, so no network access is needed.
"""

import asyncio
import base64
import sys
from pathlib import Path

import orjson
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

# Add project src to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chat import SessionRouter, get_session_router  # noqa: E402
from core.settings import Settings  # noqa: E402
from main import app  # noqa: E402
from services.codec_service import AudioContainerCodec, BaseTranscoder, parse_wav_header  # noqa: E402
from upstream import UpstreamSettings, parse_upstream_event  # noqa: E402


class FixedTranscoder(BaseTranscoder):
    async def transcode(self, data: bytes, sample_rate: int) -> bytes:
        return b"\x00\x01" * 800


class EchoLink:
    def __init__(self, session_id: str, *, on_event, on_lost):
        self.on_event = on_event

    def open(self) -> None:
        pass

    async def wait_ready(self, timeout: float) -> bool:
        return True

    async def send(self, payload: dict) -> None:
        asyncio.get_running_loop().create_task(self._reply())

    async def _reply(self) -> None:
        parts = [
            {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": base64.b64encode(b"\x01" * 100).decode()}},
            {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": base64.b64encode(b"\x02" * 150).decode()}},
        ]
        await self.on_event(parse_upstream_event(orjson.dumps({"serverContent": {"modelTurn": {"parts": parts}}})))
        await self.on_event(parse_upstream_event(b'{"serverContent": {"generationComplete": true}}'))

    async def close(self) -> None:
        pass


@pytest.fixture
def relay_router():
    router = SessionRouter(
        settings=Settings(),
        codec=AudioContainerCodec(FixedTranscoder()),
        upstream_settings=UpstreamSettings(gemini_api_key="test-key"),
        link_factory=EchoLink,
    )
    app.dependency_overrides[get_session_router] = lambda: router
    yield router
    app.dependency_overrides.clear()


def test_health_reports_sessions(relay_router):
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "sessions": 0}


def test_info_endpoint():
    with TestClient(app) as client:
        response = client.get("/inf")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "running"
    assert body["version"] == app.version


@pytest.mark.parametrize("path", ["/", "/ws"])
def test_websocket_turn(relay_router, path):
    capture = orjson.dumps({"realtimeInput": {"audio": base64.b64encode(b"webm" * 125).decode()}}).decode()

    with TestClient(app) as client:
        with client.websocket_connect(path) as websocket:
            # Garbage first: ignored, the session keeps working
            websocket.send_text("not json")
            websocket.send_text(capture)

            reply = websocket.receive_bytes()
            control = websocket.receive_json()

    assert len(reply) == 294
    header = parse_wav_header(reply)
    assert header.sample_rate == 24000
    assert header.data_length == 250
    assert control["type"] == "autoRestart"


def test_settings_reject_grace_not_shorter_than_deadline():
    with pytest.raises(ValidationError):
        Settings(response_timeout_s=1.0, turn_complete_grace_s=1.0)
    with pytest.raises(ValidationError):
        Settings(rolling_context_size=0)

    settings = Settings(cors_allowed_origins="http://a.test, http://b.test")
    assert settings.allowed_origins == ["http://a.test", "http://b.test"]
