import base64
import binascii
from collections.abc import Awaitable, Callable
from typing import Any

import orjson
from fastapi import WebSocket

from core.errors import NotReady, TranscodeError, UpstreamTransportError
from core.logger import get_logger
from core.settings import Settings
from services.codec_service import AudioContainerCodec
from upstream import UpstreamEvent, UpstreamLink, build_media_message

from .rolling_context import RollingContext
from .turn_assembler import TurnAssembler

logger = get_logger(__name__)

LinkFactory = Callable[..., UpstreamLink]

UPSTREAM_NOT_READY_MESSAGE = "AI connection not ready - please try again"
TURN_IN_PROGRESS_MESSAGE = "Still working on the previous request - please wait"
UPSTREAM_RECONNECTING_MESSAGE = "AI connection interrupted - please try again"
UPSTREAM_LOST_MESSAGE = "AI connection lost - please reconnect"


class ChatSession:
    """
    Represents a single active conversation session.
    Holds all state specific to one client connection: its upstream link,
    its turn assembler and its rolling interaction history.
    """

    def __init__(
        self,
        websocket: WebSocket,
        session_id: str,
        settings: Settings,
        codec: AudioContainerCodec,
        link_factory: LinkFactory,
        on_upstream_event: Callable[[UpstreamEvent], Awaitable[None]],
        on_upstream_lost: Callable[[UpstreamTransportError, bool], Awaitable[None]],
    ):
        logger.info(f"Initializing ChatSession for client: {session_id}")

        self.websocket = websocket
        self.session_id = session_id
        self.settings = settings
        self.codec = codec
        self.is_active = True

        self.context = RollingContext(settings.rolling_context_size)
        self.assembler = TurnAssembler(
            session_id,
            codec,
            send_audio=self.send_bytes,
            send_json=self.send_json,
            context=self.context,
            response_timeout_s=settings.response_timeout_s,
            turn_complete_grace_s=settings.turn_complete_grace_s,
        )

        # Unique upstream link per session
        self.link = link_factory(session_id, on_event=on_upstream_event, on_lost=on_upstream_lost)

    async def start(self) -> None:
        """Start connecting upstream without waiting for the handshake."""
        self.link.open()

    async def stop(self) -> None:
        """Cleanup resources. Abandons any in-flight turn, even mid-flush."""
        if not self.is_active:
            return
        self.is_active = False
        self.assembler.close()
        await self.link.close()
        logger.info(f"Session {self.session_id} stopped ({len(self.context)} interactions recorded).")

    async def _deliver(self, send: Callable[[Any], Awaitable[None]], frame: str | bytes) -> None:
        if not self.is_active:
            return

        try:
            await send(frame)
        except Exception as e:
            # Silence expected errors on disconnect
            if "Unexpected ASGI message" in str(e) or "websocket.close" in str(e):
                logger.debug(f"Socket closed while sending to {self.session_id}: {e}")
            else:
                logger.error(f"Error sending to client {self.session_id}: {e}")

    async def send_json(self, message: dict[str, Any]) -> None:
        """Send a JSON control message to this specific client."""
        await self._deliver(self.websocket.send_text, orjson.dumps(message).decode("utf-8"))

    async def send_bytes(self, data: bytes) -> None:
        """Send a binary audio frame to this specific client."""
        await self._deliver(self.websocket.send_bytes, data)

    @staticmethod
    def _extract_audio(raw: str | bytes) -> bytes | None:
        """Return the compressed capture of a client message, or None if there is none to process."""
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("Ignoring client message that is not valid JSON")
            return None

        if not isinstance(message, dict):
            return None
        realtime_input = message.get("realtimeInput")
        if not isinstance(realtime_input, dict):
            return None
        audio_b64 = realtime_input.get("audio")
        if not audio_b64 or not isinstance(audio_b64, str):
            return None

        try:
            audio = base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Ignoring client audio that is not valid base64: {e}")
            return None
        return audio or None

    async def process_message(self, raw: str | bytes) -> None:
        """Handle one incoming client message: decode the capture and forward it upstream."""
        if not self.is_active:
            return

        compressed = self._extract_audio(raw)
        if compressed is None:
            return

        try:
            turn_id = self.assembler.begin_turn()
        except NotReady as e:
            logger.warning(f"Session {self.session_id}: Rejecting capture: {e}")
            await self.send_json({"error": TURN_IN_PROGRESS_MESSAGE})
            return

        logger.info(f"Session {self.session_id}: Received {len(compressed)} bytes of audio, converting to PCM")

        try:
            pcm = await self.codec.decode(compressed)
        except TranscodeError as e:
            logger.error(f"Session {self.session_id}: Audio processing error: {e}")
            self.assembler.abort_turn(turn_id)
            await self.send_json({"error": str(e)})
            return

        # The deadline may have ended the turn while transcoding
        if not self.is_active or not self.assembler.is_current(turn_id):
            logger.warning(f"Session {self.session_id}: Turn {turn_id} ended before its audio was forwarded")
            return

        try:
            await self.link.wait_ready(self.settings.upstream_ready_wait_s)
            # A deadline or an upstream drop during the wait ends the turn; its audio must not reach the model
            if not self.is_active or not self.assembler.is_current(turn_id):
                logger.warning(f"Session {self.session_id}: Turn {turn_id} ended while waiting for the upstream link")
                return
            await self.link.send(build_media_message(pcm, self.settings.input_sample_rate))
        except NotReady as e:
            logger.warning(f"Session {self.session_id}: {e}")
            self.assembler.abort_turn(turn_id)
            await self.send_json({"error": UPSTREAM_NOT_READY_MESSAGE})
            return
        except UpstreamTransportError as e:
            logger.error(f"Session {self.session_id}: {e}")
            self.assembler.abort_turn(turn_id)
            await self.send_json({"type": "error", "error": UPSTREAM_RECONNECTING_MESSAGE})
            return

        self.context.record("user_input", audio_bytes=len(pcm))
        logger.info(f"Session {self.session_id}: Sent {len(pcm)} PCM bytes upstream (turn {turn_id})")

    async def on_upstream_event(self, event: UpstreamEvent) -> None:
        """Dispatch one parsed upstream event into the turn assembler."""
        if not self.is_active:
            return
        await self.assembler.handle_event(event)

    async def on_upstream_lost(self, error: UpstreamTransportError, will_retry: bool) -> None:
        """
        React to an upstream drop. The in-flight turn is lost either way;
        a recoverable drop lets the client capture again right away.
        """
        if not self.is_active:
            return
        self.assembler.reset()
        if will_retry:
            await self.send_json({"type": "error", "error": UPSTREAM_RECONNECTING_MESSAGE})
        else:
            await self.send_json({"error": UPSTREAM_LOST_MESSAGE})
