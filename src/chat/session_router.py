import uuid
from functools import lru_cache

from fastapi import WebSocket, status

from core.errors import UpstreamTransportError
from core.logger import get_logger
from core.settings import Settings, get_settings
from services.codec_service import AudioContainerCodec, get_audio_codec
from upstream import UpstreamEvent, UpstreamLink, UpstreamSettings, get_upstream_settings

from .chat_session import ChatSession, LinkFactory

logger = get_logger(__name__)


class SessionRouter:
    """
    Registry for active chat sessions.

    Owns the session table and routes client messages and upstream events to
    the session they belong to. Unknown session ids are ignored, so events
    arriving after a disconnect are harmless.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        codec: AudioContainerCodec | None = None,
        upstream_settings: UpstreamSettings | None = None,
        link_factory: LinkFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.codec = codec or get_audio_codec()
        self.upstream_settings = upstream_settings or get_upstream_settings()
        self.link_factory = link_factory or self._create_link
        self.sessions: dict[str, ChatSession] = {}

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    def get(self, session_id: str) -> ChatSession | None:
        return self.sessions.get(session_id)

    def _create_link(self, session_id: str, *, on_event, on_lost) -> UpstreamLink:
        return UpstreamLink(
            session_id,
            self.upstream_settings,
            on_event=on_event,
            on_lost=on_lost,
            max_reconnects=self.settings.upstream_max_reconnects,
            stable_after_s=self.settings.upstream_stable_after_s,
            open_timeout_s=self.settings.upstream_open_timeout_s,
            default_output_rate=self.settings.default_output_sample_rate,
        )

    async def connect(self, websocket: WebSocket) -> ChatSession:
        await websocket.accept()

        session_id = str(uuid.uuid4())

        async def on_event(event: UpstreamEvent) -> None:
            await self.on_upstream_message(session_id, event)

        async def on_lost(error: UpstreamTransportError, will_retry: bool) -> None:
            await self.on_upstream_lost(session_id, error, will_retry)

        session = ChatSession(
            websocket,
            session_id,
            self.settings,
            self.codec,
            self.link_factory,
            on_upstream_event=on_event,
            on_upstream_lost=on_lost,
        )
        self.sessions[session_id] = session

        await session.start()
        logger.info(f"Session started: {session_id} ({self.session_count} active)")
        return session

    async def handle_message(self, session_id: str, raw: str | bytes) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            logger.debug(f"Message for unknown session {session_id} ignored")
            return
        await session.process_message(raw)

    async def on_upstream_message(self, session_id: str, event: UpstreamEvent) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        await session.on_upstream_event(event)

    async def on_upstream_lost(self, session_id: str, error: UpstreamTransportError, will_retry: bool) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return

        await session.on_upstream_lost(error, will_retry)
        if not will_retry:
            await self._teardown(session_id, code=status.WS_1011_INTERNAL_ERROR, reason="Upstream connection lost")

    async def disconnect(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        await session.stop()
        logger.info(f"Client disconnected: {session_id} ({self.session_count} active)")

    async def _teardown(self, session_id: str, code: int, reason: str) -> None:
        """End a session from the server side and close its client socket."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        await session.stop()
        try:
            await session.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Session {session_id}: Client socket already closed: {e}")
        logger.warning(f"Session {session_id} torn down: {reason}")

    async def close_all(self) -> None:
        for session_id in list(self.sessions):
            await self._teardown(session_id, code=status.WS_1001_GOING_AWAY, reason="Server shutting down")


@lru_cache
def get_session_router() -> SessionRouter:
    """
    Get the singleton session router.
    LRU cache ensures we always get the same instance.
    """
    return SessionRouter()
