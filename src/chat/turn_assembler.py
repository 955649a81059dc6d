"""
Turn Assembler

Turn-taking state machine for one session. Accumulates the model's streamed
PCM fragments, decides when a reply is complete (generation complete, turn
complete + grace window, or response deadline), and delivers exactly one WAV
per turn followed by an auto-restart notification.

States:
    IDLE -> AWAITING_RESPONSE -> GENERATING -> FLUSHING -> IDLE
    GENERATING -> IDLE on interruption (fragments discarded)
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from core.errors import NotReady, ResponseTimeout, TurnInProgress
from core.logger import get_logger
from services.codec_service import AudioContainerCodec
from upstream.protocol import ResponseFragment, UpstreamEvent

from .rolling_context import RollingContext

logger = get_logger(__name__)

AUTO_RESTART_MESSAGE = "AI response complete, restart listening"
NO_RESPONSE_MESSAGE = "No response from AI - please try again"


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    GENERATING = "generating"
    FLUSHING = "flushing"


class TurnAssembler:
    """
    Reassembles streamed model output into complete playable replies.

    All transitions run on the session's event loop. State changes happen in
    synchronous sections, so the per-turn ``_flushed`` flag is checked and set
    atomically with respect to the timer tasks and the message handlers.
    """

    def __init__(
        self,
        session_id: str,
        codec: AudioContainerCodec,
        send_audio: Callable[[bytes], Awaitable[None]],
        send_json: Callable[[dict[str, Any]], Awaitable[None]],
        context: RollingContext,
        *,
        response_timeout_s: float = 15.0,
        turn_complete_grace_s: float = 0.5,
    ):
        """
        Initialize the assembler in IDLE.

        Args:
            session_id: Owning session, used for logging
            codec: Encodes the concatenated PCM into a WAV container
            send_audio: Delivers a binary frame to the client
            send_json: Delivers a control message to the client
            context: Rolling interaction history of the session
            response_timeout_s: Ceiling between begin_turn() and delivery
            turn_complete_grace_s: Wait for trailing fragments after turnComplete
        """
        self.session_id = session_id
        self._codec = codec
        self._send_audio = send_audio
        self._send_json = send_json
        self._context = context
        self._response_timeout_s = response_timeout_s
        self._grace_s = turn_complete_grace_s

        self._state = TurnState.IDLE
        self._pending: list[ResponseFragment] = []
        self._turn_id = 0
        self._turn_sample_rate: int | None = None
        self._rate_mismatch_logged = False
        self._flushed = False
        self._closed = False

        self._deadline_task: asyncio.Task | None = None
        self._grace_task: asyncio.Task | None = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def turn_id(self) -> int:
        return self._turn_id

    @property
    def pending_fragments(self) -> tuple[ResponseFragment, ...]:
        return tuple(self._pending)

    def is_current(self, turn_id: int) -> bool:
        """True while ``turn_id`` is the turn in flight."""
        return turn_id == self._turn_id and self._state != TurnState.IDLE

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    def begin_turn(self) -> int:
        """
        Accept a finished client capture and start the response deadline.

        Raises:
            TurnInProgress: If the previous turn has not returned to IDLE
            NotReady: If the assembler has been closed
        """
        if self._closed:
            raise NotReady("Session is closing")
        if self._state != TurnState.IDLE:
            raise TurnInProgress(f"Previous turn is still {self._state.value}")

        self._turn_id += 1
        self._flushed = False
        self._turn_sample_rate = None
        self._rate_mismatch_logged = False
        self._state = TurnState.AWAITING_RESPONSE
        self._deadline_task = self._start_timer(self._response_timeout_s, self._on_deadline)
        logger.debug(f"Session {self.session_id}: Turn {self._turn_id} awaiting response")
        return self._turn_id

    def abort_turn(self, turn_id: int) -> None:
        """Return a turn that never reached the model to IDLE without output."""
        if turn_id != self._turn_id or self._state != TurnState.AWAITING_RESPONSE:
            return
        self._cancel_timers()
        self._state = TurnState.IDLE
        logger.debug(f"Session {self.session_id}: Turn {turn_id} aborted before reaching the model")

    # ------------------------------------------------------------------
    # Upstream side
    # ------------------------------------------------------------------

    async def handle_event(self, event: UpstreamEvent) -> None:
        """
        Apply one upstream event.

        Interruption wins over anything else in the same message; otherwise
        fragments are applied in part order before the completion signals.
        """
        if event.interrupted:
            self.on_interrupted()
            return

        for fragment in event.fragments:
            self.on_fragment(fragment)

        if event.generation_complete:
            await self.on_generation_complete()

        if event.turn_complete:
            self.on_turn_complete()

    def on_fragment(self, fragment: ResponseFragment) -> None:
        if self._state == TurnState.AWAITING_RESPONSE:
            self._state = TurnState.GENERATING
            self._turn_sample_rate = fragment.sample_rate
            logger.debug(
                f"Session {self.session_id}: Turn {self._turn_id} generating at {fragment.sample_rate}Hz"
            )
        elif self._state != TurnState.GENERATING:
            logger.debug(
                f"Session {self.session_id}: Dropping {len(fragment.data)} byte fragment outside a turn "
                f"(state={self._state.value})"
            )
            return
        elif fragment.sample_rate != self._turn_sample_rate and not self._rate_mismatch_logged:
            # Mixed rates are not renegotiated; the turn keeps its first rate
            self._rate_mismatch_logged = True
            logger.warning(
                f"Session {self.session_id}: Fragment rate {fragment.sample_rate}Hz differs from turn rate "
                f"{self._turn_sample_rate}Hz, keeping {self._turn_sample_rate}Hz"
            )

        self._pending.append(fragment)

    async def on_generation_complete(self) -> None:
        if self._state == TurnState.GENERATING and self._pending:
            await self._flush("generation_complete")
        else:
            logger.debug(f"Session {self.session_id}: generationComplete ignored (state={self._state.value})")

    def on_turn_complete(self) -> None:
        if self._state != TurnState.GENERATING or not self._pending:
            return
        if self._grace_task is not None and not self._grace_task.done():
            return
        logger.debug(f"Session {self.session_id}: turnComplete, flushing in {self._grace_s}s unless completed first")
        self._grace_task = self._start_timer(self._grace_s, self._on_grace_elapsed)

    def on_interrupted(self) -> None:
        if self._state != TurnState.GENERATING:
            # Nothing generated yet; the deadline still guards the turn
            logger.debug(f"Session {self.session_id}: Ignoring interruption in state {self._state.value}")
            return
        dropped = len(self._pending)
        self._pending = []
        self._cancel_timers()
        self._state = TurnState.IDLE
        self._context.record("interrupted", fragments=dropped)
        logger.info(f"Session {self.session_id}: Turn {self._turn_id} interrupted, discarded {dropped} fragments")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Abandon whatever turn is in flight, including one mid-flush."""
        self._pending = []
        self._cancel_timers()
        self._state = TurnState.IDLE
        # Stale timer callbacks compare against the turn id
        self._turn_id += 1

    def close(self) -> None:
        self._closed = True
        self.reset()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_timer(self, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        return asyncio.create_task(self._fire_after(delay, self._turn_id, callback))

    async def _fire_after(self, delay: float, turn_id: int, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        if turn_id != self._turn_id or self._closed:
            return
        try:
            await callback()
        except Exception as e:
            logger.error(f"Session {self.session_id}: Turn timer callback failed: {e}", exc_info=True)

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()

        deadline, self._deadline_task = self._deadline_task, None
        if deadline is not None and not deadline.done() and deadline is not current:
            deadline.cancel()

        grace, self._grace_task = self._grace_task, None
        if grace is not None and not grace.done() and grace is not current:
            grace.cancel()

    async def _on_deadline(self) -> None:
        if self._flushed or self._state not in (TurnState.AWAITING_RESPONSE, TurnState.GENERATING):
            return

        if self._pending:
            logger.warning(f"Session {self.session_id}: Response deadline reached, sending accumulated audio")
            await self._flush("deadline")
            return

        self._cancel_timers()
        self._state = TurnState.IDLE
        error = ResponseTimeout(NO_RESPONSE_MESSAGE)
        self._context.record("timeout", detail=str(error))
        logger.warning(f"Session {self.session_id}: Response deadline reached with no audio")
        await self._send_json({"type": "error", "error": str(error)})

    async def _on_grace_elapsed(self) -> None:
        if self._state == TurnState.GENERATING and self._pending:
            await self._flush("turn_complete")

    async def _flush(self, reason: str) -> bool:
        """Deliver the turn's audio once. Returns False if the turn was already flushed."""
        if self._flushed or not self._pending:
            return False

        self._flushed = True
        self._state = TurnState.FLUSHING
        fragments, self._pending = self._pending, []
        self._cancel_timers()

        sample_rate = self._turn_sample_rate or fragments[0].sample_rate
        pcm = b"".join(fragment.data for fragment in fragments)
        container = self._codec.encode(pcm, sample_rate)

        self._context.record("response", audio_bytes=len(pcm), fragments=len(fragments), detail=reason)
        logger.info(
            f"Session {self.session_id}: Turn {self._turn_id} complete ({reason}): "
            f"{len(fragments)} fragments, {len(pcm)} bytes at {sample_rate}Hz"
        )

        try:
            await self._send_audio(container)
            if not self._closed:
                await self._send_json({"type": "autoRestart", "message": AUTO_RESTART_MESSAGE})
        finally:
            if self._state == TurnState.FLUSHING:
                self._state = TurnState.IDLE

        return True
