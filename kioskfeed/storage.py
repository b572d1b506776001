from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .schemas import AnalysisResult

DEFAULT_CAPACITY = 25


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResultStore:
    """Fixed-capacity ring of the most recent analysis results.

    Once full, each insert overwrites the slot under a round-robin cursor,
    so eviction follows insertion order.  The buffer is unordered with
    respect to time; ``latest`` and ``all`` order by the store-assigned
    timestamp, ties broken by insertion sequence.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._clock = clock
        self._buffer: List[Tuple[int, AnalysisResult]] = []
        self._cursor = 0
        self._seq = 0
        self._last_stamp: Optional[datetime] = None

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, result: AnalysisResult) -> AnalysisResult:
        """Stamp and insert a result, returning the stored copy."""
        stamp = self._clock()
        if self._last_stamp is not None and stamp < self._last_stamp:
            # wall clock stepped back
            stamp = self._last_stamp
        self._last_stamp = stamp

        stored = result.model_copy(update={"timestamp": stamp})
        self._seq += 1
        entry = (self._seq, stored)

        if len(self._buffer) < self._capacity:
            self._buffer.append(entry)
        else:
            self._buffer[self._cursor] = entry
            self._cursor = (self._cursor + 1) % self._capacity
        return stored

    def latest(self) -> Optional[AnalysisResult]:
        if not self._buffer:
            return None
        _, result = max(self._buffer, key=lambda e: (e[1].timestamp, e[0]))
        return result

    def all(self) -> List[AnalysisResult]:
        ordered = sorted(self._buffer, key=lambda e: (e[1].timestamp, e[0]))
        return [result for _, result in ordered]

    def size(self) -> int:
        return len(self._buffer)

    def __len__(self) -> int:
        return self.size()
