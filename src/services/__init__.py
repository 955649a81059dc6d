"""
Services Package

Contains service layer classes for:
- Audio container codec (compressed capture -> PCM, PCM -> WAV)
- Transcoder collaborators (ffmpeg subprocess)
"""

from services.codec_service import (
    WAV_HEADER_SIZE,
    AudioContainerCodec,
    BaseTranscoder,
    FfmpegTranscoder,
    WavHeader,
    build_wav_header,
    get_audio_codec,
    parse_wav_header,
)

__all__ = [
    "WAV_HEADER_SIZE",
    "AudioContainerCodec",
    "BaseTranscoder",
    "FfmpegTranscoder",
    "WavHeader",
    "build_wav_header",
    "get_audio_codec",
    "parse_wav_header",
]
