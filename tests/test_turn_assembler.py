"""
Tests for the turn assembler state machine.

Verifies that:
1. Fragments are concatenated in arrival order and encoded at the first rate
2. Interruption discards the turn and leaves the session usable; before any audio it is ignored
3. The response deadline sends exactly one error when no audio arrived
4. turnComplete flushes after the grace window
5. At most one flush happens when completion and deadline race
6. The rolling context never exceeds its bound
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project src to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chat.rolling_context import RollingContext  # noqa: E402
from chat.turn_assembler import AUTO_RESTART_MESSAGE, NO_RESPONSE_MESSAGE, TurnAssembler, TurnState  # noqa: E402
from core.errors import NotReady, TurnInProgress  # noqa: E402
from services.codec_service import WAV_HEADER_SIZE, AudioContainerCodec, BaseTranscoder, parse_wav_header  # noqa: E402
from upstream.protocol import ResponseFragment, UpstreamEvent  # noqa: E402


class NullTranscoder(BaseTranscoder):
    async def transcode(self, data: bytes, sample_rate: int) -> bytes:
        return data


class Recorder:
    """Collects everything the assembler delivers to the client."""

    def __init__(self):
        self.frames: list[bytes | dict] = []

    async def send_audio(self, data: bytes) -> None:
        self.frames.append(data)

    async def send_json(self, message: dict) -> None:
        self.frames.append(message)

    @property
    def audio(self) -> list[bytes]:
        return [f for f in self.frames if isinstance(f, bytes)]

    @property
    def messages(self) -> list[dict]:
        return [f for f in self.frames if isinstance(f, dict)]


def make_assembler(response_timeout_s: float = 5.0, grace_s: float = 0.05, context_size: int = 10):
    recorder = Recorder()
    context = RollingContext(context_size)
    assembler = TurnAssembler(
        "test-session",
        AudioContainerCodec(NullTranscoder()),
        send_audio=recorder.send_audio,
        send_json=recorder.send_json,
        context=context,
        response_timeout_s=response_timeout_s,
        turn_complete_grace_s=grace_s,
    )
    return assembler, recorder, context


def fragment(size: int, rate: int = 24000, fill: int = 1) -> ResponseFragment:
    return ResponseFragment(data=bytes([fill]) * size, sample_rate=rate)


async def test_generation_complete_flushes_ordered_audio():
    assembler, recorder, _ = make_assembler()
    assembler.begin_turn()

    await assembler.handle_event(UpstreamEvent(fragments=[fragment(100, fill=1), fragment(150, fill=2)]))
    assert assembler.state == TurnState.GENERATING
    await assembler.handle_event(UpstreamEvent(generation_complete=True))

    assert len(recorder.audio) == 1
    container = recorder.audio[0]
    assert len(container) == WAV_HEADER_SIZE + 250
    assert container[WAV_HEADER_SIZE:] == b"\x01" * 100 + b"\x02" * 150
    header = parse_wav_header(container)
    assert header.sample_rate == 24000
    assert header.data_length == 250
    assert recorder.frames[-1] == {"type": "autoRestart", "message": AUTO_RESTART_MESSAGE}
    assert assembler.state == TurnState.IDLE
    assert assembler.pending_fragments == ()


async def test_fragments_and_completion_in_one_message():
    assembler, recorder, _ = make_assembler()
    assembler.begin_turn()

    await assembler.handle_event(UpstreamEvent(fragments=[fragment(10), fragment(20)], generation_complete=True))

    assert [len(a) for a in recorder.audio] == [WAV_HEADER_SIZE + 30]


async def test_first_fragment_rate_wins():
    assembler, recorder, _ = make_assembler()
    assembler.begin_turn()

    await assembler.handle_event(UpstreamEvent(fragments=[fragment(10, rate=16000), fragment(10, rate=24000)]))
    await assembler.handle_event(UpstreamEvent(generation_complete=True))

    assert parse_wav_header(recorder.audio[0]).sample_rate == 16000


async def test_interrupt_discards_turn_and_next_capture_is_accepted():
    assembler, recorder, context = make_assembler()
    assembler.begin_turn()
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(100)]))

    await assembler.handle_event(UpstreamEvent(interrupted=True, generation_complete=True))

    assert recorder.frames == [], "Interrupted turn must deliver nothing"
    assert assembler.state == TurnState.IDLE
    assert context.snapshot()[-1].kind == "interrupted"

    assembler.begin_turn()
    assert assembler.state == TurnState.AWAITING_RESPONSE


async def test_interrupt_before_audio_keeps_deadline():
    assembler, recorder, context = make_assembler(response_timeout_s=0.05, grace_s=0.01)
    assembler.begin_turn()

    await assembler.handle_event(UpstreamEvent(interrupted=True))
    assert assembler.state == TurnState.AWAITING_RESPONSE

    await asyncio.sleep(0.15)

    assert recorder.frames == [{"type": "error", "error": NO_RESPONSE_MESSAGE}]
    assert assembler.state == TurnState.IDLE
    assert [r.kind for r in context.snapshot()] == ["timeout"]


async def test_deadline_without_audio_sends_one_error():
    assembler, recorder, context = make_assembler(response_timeout_s=0.05, grace_s=0.01)
    assembler.begin_turn()

    await asyncio.sleep(0.2)

    assert recorder.frames == [{"type": "error", "error": NO_RESPONSE_MESSAGE}]
    assert assembler.state == TurnState.IDLE
    assert context.snapshot()[-1].kind == "timeout"

    # A second capture right afterwards succeeds
    assembler.begin_turn()
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(8)], generation_complete=True))
    assert len(recorder.audio) == 1


async def test_deadline_flushes_partial_audio():
    assembler, recorder, _ = make_assembler(response_timeout_s=0.05, grace_s=0.01)
    assembler.begin_turn()
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(40)]))

    await asyncio.sleep(0.2)

    assert len(recorder.audio) == 1
    assert recorder.messages == [{"type": "autoRestart", "message": AUTO_RESTART_MESSAGE}]


async def test_turn_complete_flushes_after_grace():
    assembler, recorder, _ = make_assembler(response_timeout_s=5.0, grace_s=0.05)
    assembler.begin_turn()
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(10)], turn_complete=True))

    # Trailing fragment inside the grace window is included
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(6)]))
    assert recorder.audio == []

    await asyncio.sleep(0.2)

    assert [len(a) for a in recorder.audio] == [WAV_HEADER_SIZE + 16]
    assert assembler.state == TurnState.IDLE


async def test_turn_complete_without_audio_waits_for_deadline():
    assembler, recorder, _ = make_assembler(response_timeout_s=0.1, grace_s=0.01)
    assembler.begin_turn()

    await assembler.handle_event(UpstreamEvent(turn_complete=True))
    await asyncio.sleep(0.03)
    assert recorder.frames == []

    await asyncio.sleep(0.2)
    assert recorder.messages == [{"type": "error", "error": NO_RESPONSE_MESSAGE}]


async def test_single_flush_when_completion_and_deadline_race():
    assembler, recorder, _ = make_assembler(response_timeout_s=0.05, grace_s=0.01)
    assembler.begin_turn()
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(10)], turn_complete=True))

    await asyncio.sleep(0.04)
    await assembler.handle_event(UpstreamEvent(generation_complete=True))
    await asyncio.sleep(0.2)

    assert len(recorder.audio) == 1
    assert len([m for m in recorder.messages if m.get("type") == "autoRestart"]) == 1


async def test_fragments_outside_a_turn_are_dropped():
    assembler, recorder, _ = make_assembler()

    await assembler.handle_event(UpstreamEvent(fragments=[fragment(10)], generation_complete=True))

    assert recorder.frames == []
    assert assembler.state == TurnState.IDLE


async def test_second_capture_while_busy_is_rejected():
    assembler, _, _ = make_assembler()
    assembler.begin_turn()

    with pytest.raises(TurnInProgress):
        assembler.begin_turn()


async def test_abort_returns_to_idle_and_cancels_deadline():
    assembler, recorder, _ = make_assembler(response_timeout_s=0.05, grace_s=0.01)
    turn_id = assembler.begin_turn()

    assembler.abort_turn(turn_id)
    await asyncio.sleep(0.1)

    assert assembler.state == TurnState.IDLE
    assert recorder.frames == []


async def test_closed_assembler_rejects_turns_and_stays_silent():
    assembler, recorder, _ = make_assembler(response_timeout_s=0.05, grace_s=0.01)
    assembler.begin_turn()
    await assembler.handle_event(UpstreamEvent(fragments=[fragment(10)]))

    assembler.close()
    await asyncio.sleep(0.1)

    assert recorder.frames == []
    with pytest.raises(NotReady):
        assembler.begin_turn()


async def test_rolling_context_is_bounded():
    assembler, _, context = make_assembler(context_size=10)

    for _ in range(25):
        assembler.begin_turn()
        await assembler.handle_event(UpstreamEvent(fragments=[fragment(2)], generation_complete=True))

    assert len(context) == 10
    assert all(record.kind == "response" for record in context)
