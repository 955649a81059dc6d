"""
Audio Container Codec

Converts the browser's compressed captures into raw PCM for the upstream
model and wraps the model's raw PCM replies into playable WAV containers.

The actual transcoding is delegated to an external tool (ffmpeg) behind the
BaseTranscoder interface so the turn logic never touches the filesystem.
"""

import asyncio
import struct
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from core.errors import TranscodeError
from core.logger import get_logger
from core.settings import get_settings

logger = get_logger(__name__)

WAV_HEADER_SIZE = 44
_WAV_HEADER_FORMAT = "<4sI4s4sIHHIIHH4sI"


@dataclass(frozen=True)
class WavHeader:
    """Fields of a canonical 44-byte PCM WAV header."""

    sample_rate: int
    channels: int
    bits_per_sample: int
    byte_rate: int
    block_align: int
    data_length: int


def build_wav_header(data_length: int, sample_rate: int, channels: int = 1, bits_per_sample: int = 16) -> bytes:
    """Build a canonical RIFF/WAVE header for PCM data of the given length."""
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    return struct.pack(
        _WAV_HEADER_FORMAT,
        b"RIFF",
        36 + data_length,  # ChunkSize
        b"WAVE",
        b"fmt ",
        16,  # Subchunk1Size (PCM)
        1,  # AudioFormat (PCM)
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_length,
    )


def parse_wav_header(container: bytes) -> WavHeader:
    """
    Parse the canonical 44-byte header produced by build_wav_header.

    Raises:
        TranscodeError: If the bytes do not start with a PCM WAV header
    """
    if len(container) < WAV_HEADER_SIZE:
        raise TranscodeError(f"WAV container too short: {len(container)} bytes")

    (
        riff,
        _chunk_size,
        wave,
        fmt,
        _fmt_size,
        audio_format,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        data_id,
        data_length,
    ) = struct.unpack(_WAV_HEADER_FORMAT, container[:WAV_HEADER_SIZE])

    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_id != b"data" or audio_format != 1:
        raise TranscodeError("Not a canonical PCM WAV container")

    return WavHeader(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
        byte_rate=byte_rate,
        block_align=block_align,
        data_length=data_length,
    )


class BaseTranscoder(ABC):
    """External transcoding collaborator: any audio in, PCM s16le mono out."""

    @abstractmethod
    async def transcode(self, data: bytes, sample_rate: int) -> bytes:
        """
        Convert arbitrary container audio into raw PCM.

        Args:
            data: Input audio bytes (WebM/Opus, WAV, ...)
            sample_rate: Target sample rate of the PCM output

        Returns:
            Raw PCM16 little-endian mono bytes
        """
        pass


class FfmpegTranscoder(BaseTranscoder):
    """
    Transcoder that shells out to ffmpeg.

    Each call works inside its own temporary directory, which is removed on
    every exit path. The subprocess runs without blocking the event loop.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout_s: float = 10.0, temp_dir: str | None = None):
        self._ffmpeg_path = ffmpeg_path
        self._timeout_s = timeout_s
        self._temp_dir = temp_dir

    def _build_command(self, in_path: Path, out_path: Path, sample_rate: int) -> list[str]:
        return [
            self._ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(in_path),
            "-ac",
            "1",
            "-ar",
            str(sample_rate),
            "-f",
            "s16le",
            str(out_path),
        ]

    async def transcode(self, data: bytes, sample_rate: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="relay-transcode-", dir=self._temp_dir) as workdir:
            in_path = Path(workdir) / "input"
            out_path = Path(workdir) / "output.pcm"
            await asyncio.to_thread(in_path.write_bytes, data)

            try:
                process = await asyncio.create_subprocess_exec(
                    *self._build_command(in_path, out_path, sample_rate),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise TranscodeError(f"Failed to start transcoder: {e}") from e

            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout_s)
            except asyncio.TimeoutError as e:
                raise TranscodeError(f"Transcoder timed out after {self._timeout_s}s") from e
            finally:
                if process.returncode is None:
                    process.kill()
                    await process.wait()

            if process.returncode != 0:
                detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
                reason = detail[-1] if detail else f"exit code {process.returncode}"
                raise TranscodeError(f"Transcoder failed: {reason}")

            if not out_path.exists():
                raise TranscodeError("Transcoder produced no output file")

            return await asyncio.to_thread(out_path.read_bytes)


class AudioContainerCodec:
    """
    Codec boundary between the client's containers and the model's raw PCM.

    decode() goes through the external transcoder; encode() is a pure,
    deterministic header synthesis.
    """

    def __init__(self, transcoder: BaseTranscoder, input_sample_rate: int = 16000):
        """
        Initialize the codec.

        Args:
            transcoder: External transcoding collaborator
            input_sample_rate: Sample rate of the PCM produced by decode()
        """
        self._transcoder = transcoder
        self.input_sample_rate = input_sample_rate

    async def decode(self, compressed: bytes) -> bytes:
        """
        Convert compressed client audio into raw PCM16 mono.

        Raises:
            TranscodeError: On empty input, transcoder failure or empty output
        """
        if not compressed:
            raise TranscodeError("Empty audio input")

        pcm = await self._transcoder.transcode(compressed, self.input_sample_rate)
        if not pcm:
            raise TranscodeError("Transcoder produced zero bytes of audio")

        logger.debug(f"Decoded {len(compressed)} compressed bytes into {len(pcm)} PCM bytes")
        return pcm

    def encode(self, pcm: bytes, sample_rate: int) -> bytes:
        """Wrap raw PCM16 mono samples in a 44-byte WAV header."""
        return build_wav_header(len(pcm), sample_rate) + pcm


@lru_cache
def get_audio_codec() -> AudioContainerCodec:
    """Get the shared codec, built from settings. The codec holds no per-session state."""
    settings = get_settings()
    transcoder = FfmpegTranscoder(
        ffmpeg_path=settings.ffmpeg_path,
        timeout_s=settings.transcode_timeout_s,
        temp_dir=settings.transcode_temp_dir,
    )
    return AudioContainerCodec(transcoder, input_sample_rate=settings.input_sample_rate)
