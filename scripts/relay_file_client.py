"""
Drive one conversation turn against a running relay from a WAV file.

The file is streamed through the client conversation controller as if it were
microphone input (followed by trailing silence so the voice detector closes the
utterance). The reply WAV is written to disk.

Usage:
    python scripts/relay_file_client.py question.wav --out reply.wav
"""

import argparse
import asyncio
import base64
import sys
import wave
from pathlib import Path

import orjson
import websockets

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from client import ClientConversationController, UIState, VoiceActivityDetector  # noqa: E402
from core.logger import get_logger, setup_logging  # noqa: E402
from core.settings import get_settings  # noqa: E402
from services.codec_service import build_wav_header, parse_wav_header  # noqa: E402

logger = get_logger("relay_file_client")

CHUNK_MS = 100


def load_pcm(path: Path, expected_rate: int) -> bytes:
    with wave.open(str(path), "rb") as wav:
        if wav.getnchannels() != 1 or wav.getsampwidth() != 2:
            raise SystemExit(f"{path}: expected 16-bit mono WAV")
        if wav.getframerate() != expected_rate:
            raise SystemExit(f"{path}: expected {expected_rate}Hz, got {wav.getframerate()}Hz")
        return wav.readframes(wav.getnframes())


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    rate = settings.input_sample_rate
    pcm = load_pcm(Path(args.input), rate)
    # Trailing silence long enough to end the utterance
    pcm += b"\x00\x00" * (rate * (settings.client_vad_silence_ms + 500) // 1000)

    detector = VoiceActivityDetector(
        sample_rate=rate,
        energy_threshold=settings.client_vad_energy_threshold,
        silence_ms=settings.client_vad_silence_ms,
        min_speech_ms=settings.client_vad_min_speech_ms,
        window_ms=settings.client_vad_window_ms,
    )
    reply_received = asyncio.Event()

    async with websockets.connect(args.url, max_size=None) as ws:

        async def send_capture(utterance: bytes) -> None:
            container = build_wav_header(len(utterance), rate) + utterance
            await ws.send(orjson.dumps({"realtimeInput": {"audio": base64.b64encode(container).decode("ascii")}}))
            logger.info(f"Sent {len(container)} byte capture")

        async def play(container: bytes) -> None:
            header = parse_wav_header(container)
            Path(args.out).write_bytes(container)
            logger.info(f"Saved reply to {args.out}: {header.data_length} bytes at {header.sample_rate}Hz")
            reply_received.set()

        async def stop_playback() -> None:
            logger.info("Playback stopped")

        controller = ClientConversationController(
            detector,
            on_capture_complete=send_capture,
            on_play=play,
            on_stop_playback=stop_playback,
            processing_timeout_s=settings.client_processing_timeout_s,
        )
        await controller.start_conversation()

        chunk_bytes = rate * CHUNK_MS // 1000 * 2
        for offset in range(0, len(pcm), chunk_bytes):
            await controller.feed_audio(pcm[offset : offset + chunk_bytes])
            if controller.state != UIState.CAPTURING:
                break

        if controller.state != UIState.PROCESSING:
            logger.error("No utterance detected in the input file")
            return 1

        while not reply_received.is_set():
            try:
                message = await asyncio.wait_for(ws.recv(), timeout=1.0)
            except asyncio.TimeoutError:
                if controller.check_timeout():
                    logger.error(f"No reply: {controller.last_error}")
                    return 1
                continue

            await controller.handle_server_message(message)
            if controller.state == UIState.IDLE_UI:
                logger.error(f"Relay error: {controller.last_error}")
                return 1
            if controller.last_error and controller.state == UIState.CAPTURING:
                logger.error(f"Relay error: {controller.last_error}")
                return 1

        await controller.playback_finished()
        await controller.stop_conversation()

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a WAV file through the voice relay and save the reply")
    parser.add_argument("input", help="16-bit mono WAV at the relay's input sample rate")
    parser.add_argument("--url", default="ws://localhost:3000/", help="Relay WebSocket URL")
    parser.add_argument("--out", default="reply.wav", help="Where to write the reply WAV")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    setup_logging("DEBUG" if args.debug else "INFO")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
