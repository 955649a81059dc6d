"""
Upstream Link

Owns one Gemini Live WebSocket per client session: connects, sends the setup
handshake, detects its acknowledgement, forwards inbound events to the session
and reconnects once when the connection drops.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import orjson
import websockets

from core.errors import MalformedUpstreamEvent, UpstreamNotReady, UpstreamTransportError
from core.logger import get_logger

from .protocol import DEFAULT_OUTPUT_SAMPLE_RATE, UpstreamEvent, build_setup_message, parse_upstream_event
from .upstream_settings import UpstreamSettings

logger = get_logger(__name__)

EventHandler = Callable[[UpstreamEvent], Awaitable[None]]
LostHandler = Callable[[UpstreamTransportError, bool], Awaitable[None]]

# Close code Gemini uses when it rejects a message body
_INVALID_PAYLOAD_CLOSE_CODE = 1007


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class UpstreamLink:
    """
    Connection manager for a single session's upstream model socket.

    The link does not interpret turn semantics. Every parsed event is handed to
    ``on_event``; only ``setupComplete`` changes the link's own state.
    """

    def __init__(
        self,
        session_id: str,
        settings: UpstreamSettings,
        on_event: EventHandler,
        on_lost: LostHandler,
        *,
        max_reconnects: int = 1,
        stable_after_s: float = 30.0,
        open_timeout_s: float = 10.0,
        default_output_rate: int = DEFAULT_OUTPUT_SAMPLE_RATE,
        connector: Callable[..., Any] | None = None,
    ):
        """
        Initialize the link without connecting.

        Args:
            session_id: Owning session, used for logging
            settings: Upstream endpoint and setup configuration
            on_event: Awaited for every parsed inbound event, in arrival order
            on_lost: Awaited with (error, will_retry) when the transport drops
            max_reconnects: Reconnection attempts allowed per close event
            stable_after_s: Time a link must stay ready before a later drop
                gets a fresh reconnection budget
            open_timeout_s: Timeout for the WebSocket opening handshake
            default_output_rate: Rate assumed for fragments without ``rate=``
            connector: Replacement for ``websockets.connect`` (tests)
        """
        self.session_id = session_id
        self._settings = settings
        self._on_event = on_event
        self._on_lost = on_lost
        self._max_reconnects = max_reconnects
        self._reconnects_left = max_reconnects
        self._stable_after_s = stable_after_s
        self._ready_since: float | None = None
        self._open_timeout_s = open_timeout_s
        self._default_output_rate = default_output_rate
        self._connector = connector or websockets.connect

        self._state = LinkState.DISCONNECTED
        self._ws: Any | None = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self._ready = asyncio.Event()

        self.setup_acknowledged = False
        self.last_error: UpstreamTransportError | None = None

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == LinkState.READY

    def open(self) -> None:
        """Start connecting in the background. Returns immediately."""
        if self._task is not None or self._closing:
            return
        self._state = LinkState.CONNECTING
        self._task = asyncio.create_task(self._run_connection_loop())

    async def wait_ready(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the handshake acknowledgement."""
        if self.is_ready:
            return True
        if self._state == LinkState.CLOSED:
            return False
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready

    async def send(self, payload: dict[str, Any]) -> None:
        """
        Forward a payload to the model verbatim.

        Raises:
            UpstreamNotReady: If the handshake has not been acknowledged
            UpstreamTransportError: If the socket fails during the send
        """
        ws = self._ws
        if self._state != LinkState.READY or ws is None:
            raise UpstreamNotReady(f"Upstream link is {self._state.value}")

        try:
            await ws.send(orjson.dumps(payload).decode("utf-8"))
        except websockets.exceptions.ConnectionClosed as e:
            raise UpstreamTransportError(f"Upstream closed during send: {e}") from e
        except OSError as e:
            raise UpstreamTransportError(f"Upstream send failed: {e}") from e

    async def close(self) -> None:
        """Release the transport. Safe to call more than once and from the link's own callbacks."""
        if self._closing:
            return
        self._closing = True
        self._state = LinkState.CLOSED
        self.setup_acknowledged = False
        # Release anyone waiting for the handshake; they observe CLOSED
        self._ready.set()

        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Session {self.session_id}: Error while stopping upstream task: {e}")

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_quietly(ws)

        logger.info(f"Session {self.session_id}: Upstream link closed")

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Session {self.session_id}: Ignoring error while closing upstream socket: {e}")

    async def _run_connection_loop(self) -> None:
        """
        Background task that keeps the upstream socket alive.

        One iteration per connection attempt; a drop is followed by at most
        ``max_reconnects`` attempts before the link gives up.
        """
        setup_message = build_setup_message(
            self._settings.gemini_model,
            self._settings.generation_config,
            self._settings.gemini_system_instruction,
        )

        while not self._closing:
            close_code: int | None = None
            try:
                logger.info(f"Session {self.session_id}: Connecting to upstream model ({self._state.value})")
                ws = await self._connector(
                    self._settings.endpoint_url,
                    open_timeout=self._open_timeout_s,
                    max_size=None,
                )
                self._ws = ws
                self._state = LinkState.HANDSHAKING
                await ws.send(orjson.dumps(setup_message).decode("utf-8"))
                logger.info(f"Session {self.session_id}: Setup sent for model {self._settings.gemini_model}")

                async for message in ws:
                    await self._handle_message(message)

                close_code = getattr(ws, "close_code", None)
                error = UpstreamTransportError(f"Upstream closed the connection (code={close_code})", close_code)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                close_code = getattr(self._ws, "close_code", None)
                error = UpstreamTransportError(f"Upstream transport error: {e}", close_code)
            finally:
                ws, self._ws = self._ws, None
                if ws is not None:
                    await self._close_quietly(ws)

            if self._closing:
                break

            self.setup_acknowledged = False
            self._ready.clear()
            self.last_error = error

            # Only a link that stayed up long enough earns a fresh retry; flapping exhausts it
            if self._ready_since is not None:
                if asyncio.get_running_loop().time() - self._ready_since >= self._stable_after_s:
                    self._reconnects_left = self._max_reconnects
                self._ready_since = None

            if error.close_code == _INVALID_PAYLOAD_CLOSE_CODE:
                logger.error(f"Session {self.session_id}: Upstream rejected a payload (1007) - check the message format")

            will_retry = self._reconnects_left > 0
            if will_retry:
                self._reconnects_left -= 1
                self._state = LinkState.RECONNECTING
                logger.warning(f"Session {self.session_id}: {error}. Reconnecting once.")
            else:
                self._state = LinkState.CLOSED
                logger.error(f"Session {self.session_id}: {error}. No reconnection attempts left.")

            try:
                await self._on_lost(error, will_retry)
            except Exception as e:
                logger.error(f"Session {self.session_id}: Link-lost handler failed: {e}", exc_info=True)

            if not will_retry:
                self._ready.set()
                break

    async def _handle_message(self, message: str | bytes) -> None:
        try:
            event = parse_upstream_event(message, self._default_output_rate)
        except MalformedUpstreamEvent as e:
            logger.warning(f"Session {self.session_id}: Dropping malformed upstream event: {e}")
            return

        if event.setup_complete and not self.setup_acknowledged:
            self.setup_acknowledged = True
            self._state = LinkState.READY
            self._ready_since = asyncio.get_running_loop().time()
            self._ready.set()
            logger.info(f"Session {self.session_id}: Upstream setup acknowledged")

        try:
            await self._on_event(event)
        except Exception as e:
            logger.error(f"Session {self.session_id}: Error handling upstream event: {e}", exc_info=True)
