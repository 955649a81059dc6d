"""
Client Conversation Controller

Client half of the continuous-conversation contract: listens, submits one
capture per turn, plays the reply and starts listening again on its own.

States:
    IDLE_UI -> CAPTURING -> PROCESSING -> PLAYING -> CAPTURING ...
    any -> IDLE_UI on stop_conversation() or a terminal {error}

Transport and audio output are injected as callbacks so the same controller
drives a browser bridge, the file client script or a test.
"""

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import orjson

from core.logger import get_logger

from .voice_activity import VoiceActivityDetector

logger = get_logger(__name__)


class UIState(str, Enum):
    IDLE_UI = "idle"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    PLAYING = "playing"


class ClientConversationController:
    """Turn-taking state machine for the client side of a relay connection."""

    def __init__(
        self,
        detector: VoiceActivityDetector,
        on_capture_complete: Callable[[bytes], Awaitable[None]],
        on_play: Callable[[bytes], Awaitable[None]],
        on_stop_playback: Callable[[], Awaitable[None]],
        *,
        processing_timeout_s: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the controller in IDLE_UI.

        Args:
            detector: Voice activity detector fed while CAPTURING
            on_capture_complete: Receives each finished utterance (PCM16 mono)
            on_play: Starts local playback of a reply container
            on_stop_playback: Cancels local playback
            processing_timeout_s: Longest wait for a reply before listening again
            clock: Monotonic time source
        """
        self._detector = detector
        self._on_capture_complete = on_capture_complete
        self._on_play = on_play
        self._on_stop_playback = on_stop_playback
        self._processing_timeout_s = processing_timeout_s
        self._clock = clock

        self._state = UIState.IDLE_UI
        self._processing_since: float | None = None

        self.conversation_active = False
        self.last_error: str | None = None

    @property
    def state(self) -> UIState:
        return self._state

    @property
    def can_capture(self) -> bool:
        """True when a new conversation or capture may be started by the user."""
        return self._state in (UIState.IDLE_UI, UIState.CAPTURING)

    def _enter(self, state: UIState) -> None:
        if state != self._state:
            logger.debug(f"Client state {self._state.value} -> {state.value}")
        self._state = state
        self._processing_since = self._clock() if state == UIState.PROCESSING else None

    def _resume_listening(self) -> None:
        self._detector.reset()
        self._enter(UIState.CAPTURING if self.conversation_active else UIState.IDLE_UI)

    async def start_conversation(self) -> None:
        if self.conversation_active:
            return
        self.conversation_active = True
        self.last_error = None
        self._resume_listening()
        logger.info("Conversation started, listening")

    async def stop_conversation(self) -> None:
        if self._state == UIState.PLAYING:
            await self._on_stop_playback()
        self.conversation_active = False
        self._resume_listening()
        logger.info("Conversation stopped")

    async def feed_audio(self, pcm: bytes) -> None:
        """Feed microphone audio. Ignored unless CAPTURING."""
        if self._state != UIState.CAPTURING:
            return
        utterance = self._detector.feed(pcm)
        if utterance is None:
            return
        self._enter(UIState.PROCESSING)
        logger.info(f"Captured {len(utterance)} bytes, waiting for reply")
        await self._on_capture_complete(utterance)

    async def handle_server_message(self, message: str | bytes) -> None:
        """Apply one server frame: binary audio or a JSON control object."""
        if isinstance(message, bytes):
            self._enter(UIState.PLAYING)
            await self._on_play(message)
            return

        try:
            data: Any = orjson.loads(message)
        except orjson.JSONDecodeError:
            logger.warning("Ignoring server message that is not valid JSON")
            return
        if not isinstance(data, dict):
            return

        message_type = data.get("type")
        if message_type == "autoRestart":
            if self._state == UIState.PLAYING:
                # Listening resumes when playback ends
                return
            self._resume_listening()
        elif message_type == "error":
            self.last_error = str(data.get("error", ""))
            logger.warning(f"AI response error: {self.last_error}")
            if self._state == UIState.PLAYING:
                await self._on_stop_playback()
            self._resume_listening()
        elif "error" in data:
            self.last_error = str(data["error"])
            logger.error(f"Server error: {self.last_error}")
            if self._state == UIState.PLAYING:
                await self._on_stop_playback()
            self.conversation_active = False
            self._resume_listening()

    async def playback_finished(self) -> None:
        if self._state != UIState.PLAYING:
            return
        self._resume_listening()

    async def interrupt(self) -> None:
        """Press-and-hold: cut playback short and listen right away."""
        if self._state == UIState.PLAYING:
            await self._on_stop_playback()
        self.conversation_active = True
        self._resume_listening()
        logger.info("User interruption, listening")

    def check_timeout(self) -> bool:
        """Return a stuck PROCESSING state to listening. True if the timeout fired."""
        if self._state != UIState.PROCESSING or self._processing_since is None:
            return False
        if self._clock() - self._processing_since < self._processing_timeout_s:
            return False
        self.last_error = "No response from server"
        logger.warning(f"No reply after {self._processing_timeout_s}s, listening again")
        self._resume_listening()
        return True
