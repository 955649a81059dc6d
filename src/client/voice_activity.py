import numpy as np

from core.logger import get_logger

logger = get_logger(__name__)


class VoiceActivityDetector:
    """
    Energy-gate utterance detector over PCM16 mono audio.

    Audio is analysed in fixed windows. The first window whose RMS level
    exceeds ``energy_threshold`` opens an utterance; the utterance closes once
    ``silence_ms`` of consecutive quiet windows follow it. Utterances whose
    voiced span is shorter than ``min_speech_ms`` are discarded and detection
    starts over.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        energy_threshold: float = 0.02,
        silence_ms: int = 2000,
        min_speech_ms: int = 800,
        window_ms: int = 20,
    ):
        self.sample_rate = sample_rate
        self.energy_threshold = energy_threshold
        self._window_samples = max(1, sample_rate * window_ms // 1000)
        self._silence_samples = sample_rate * silence_ms // 1000
        self._min_speech_samples = sample_rate * min_speech_ms // 1000

        self._remainder = b""
        self._utterance = bytearray()
        self._speaking = False
        # Sample offsets relative to the start of the utterance
        self._position = 0
        self._last_voiced_end = 0
        self._quiet_samples = 0

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def reset(self) -> None:
        self._remainder = b""
        self._discard_utterance()

    def _discard_utterance(self) -> None:
        self._utterance = bytearray()
        self._speaking = False
        self._position = 0
        self._last_voiced_end = 0
        self._quiet_samples = 0

    @staticmethod
    def window_level(window: bytes) -> float:
        """RMS level of a PCM16 window, normalized so full scale is 1.0."""
        samples = np.frombuffer(window, dtype=np.int16).astype(np.float32) / 32768.0
        if samples.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(samples))))

    def feed(self, pcm: bytes) -> bytes | None:
        """
        Consume captured audio.

        Returns:
            The completed utterance as PCM16 bytes once it ends, otherwise None.
            Audio after the end of an utterance in the same call is dropped.
        """
        data = self._remainder + pcm
        window_bytes = self._window_samples * 2
        usable = len(data) - len(data) % window_bytes
        self._remainder = data[usable:]

        for offset in range(0, usable, window_bytes):
            utterance = self._process_window(data[offset : offset + window_bytes])
            if utterance is not None:
                self._remainder = b""
                return utterance
        return None

    def _process_window(self, window: bytes) -> bytes | None:
        voiced = self.window_level(window) > self.energy_threshold

        if not self._speaking:
            if not voiced:
                return None
            self._speaking = True
            logger.debug("Voice detected, capturing")

        self._utterance.extend(window)
        self._position += self._window_samples

        if voiced:
            self._last_voiced_end = self._position
            self._quiet_samples = 0
            return None

        self._quiet_samples += self._window_samples
        if self._quiet_samples < self._silence_samples:
            return None

        spoken_ms = self._last_voiced_end * 1000 // self.sample_rate
        if self._last_voiced_end < self._min_speech_samples:
            logger.debug(f"Voice too short ({spoken_ms}ms), continuing to listen")
            self._discard_utterance()
            return None

        utterance = bytes(self._utterance)
        logger.debug(f"Silence detected after {spoken_ms}ms of voice")
        self._discard_utterance()
        return utterance
