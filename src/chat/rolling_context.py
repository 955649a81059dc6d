import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class InteractionRecord:
    """One diagnostic entry in a session's interaction history."""

    kind: str  # "user_input" | "response" | "interrupted" | "timeout"
    timestamp: float
    audio_bytes: int = 0
    fragments: int = 0
    detail: str = ""


class RollingContext:
    """
    Bounded interaction history for one session.

    Oldest entries are evicted first. Diagnostic only, never sent upstream.
    """

    def __init__(self, max_entries: int = 10):
        self._records: deque[InteractionRecord] = deque(maxlen=max_entries)

    @property
    def max_entries(self) -> int:
        return self._records.maxlen or 0

    def record(self, kind: str, audio_bytes: int = 0, fragments: int = 0, detail: str = "") -> InteractionRecord:
        entry = InteractionRecord(
            kind=kind,
            timestamp=time.time(),
            audio_bytes=audio_bytes,
            fragments=fragments,
            detail=detail,
        )
        self._records.append(entry)
        return entry

    def snapshot(self) -> list[InteractionRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[InteractionRecord]:
        return iter(self._records)
