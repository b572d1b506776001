import logging
from collections import OrderedDict, deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Mapping, Optional, Set, Tuple, Union

from .schemas import AnalysisResult

logger = logging.getLogger(__name__)


class DisplayState(str, Enum):
    IDLE = "idle"
    SHOWING = "showing"


class Offer(str, Enum):
    SHOWN = "shown"
    QUEUED = "queued"
    DUPLICATE = "duplicate"


class DisplaySequencer:
    """One-at-a-time display order for results arriving on either channel.

    Results may be delivered twice (push and pull) or out of order, so every
    offer is checked against the ids already shown, showing or waiting.
    Identity memory is bounded; once an id is forgotten, its timestamp
    becomes the horizon below which offers count as duplicates. Offers
    stamped exactly at the horizon are duplicates only if their id was one
    of the forgotten ones, since the store can hand out equal timestamps.
    """

    def __init__(self, history_size: int = 256):
        if history_size < 1:
            raise ValueError("history_size must be at least 1")
        self._history_size = history_size
        self._seen: "OrderedDict[str, datetime]" = OrderedDict()
        self._horizon: Optional[datetime] = None
        # forgotten ids stamped exactly at the horizon
        self._horizon_ids: Set[str] = set()
        self._queue: Deque[AnalysisResult] = deque()
        self._current: Optional[AnalysisResult] = None

    @property
    def state(self) -> DisplayState:
        return DisplayState.IDLE if self._current is None else DisplayState.SHOWING

    @property
    def current(self) -> Optional[AnalysisResult]:
        return self._current

    @property
    def pending(self) -> Tuple[AnalysisResult, ...]:
        return tuple(self._queue)

    def offer(self, result: Union[AnalysisResult, Mapping[str, Any]]) -> Offer:
        # Wire payloads carry the timestamp as text; validation parses it.
        if not isinstance(result, AnalysisResult):
            result = AnalysisResult.model_validate(result)

        if self._is_known(result):
            logger.debug("Ignoring duplicate result %s", result.id)
            return Offer.DUPLICATE
        self._remember(result)

        if self._current is None:
            self._current = result
            return Offer.SHOWN
        self._queue.append(result)
        return Offer.QUEUED

    def complete(self) -> Optional[AnalysisResult]:
        """Finish the current display; return the next result shown, if any."""
        if self._queue:
            self._current = self._queue.popleft()
        else:
            self._current = None
        return self._current

    def _is_known(self, result: AnalysisResult) -> bool:
        if result.id in self._seen:
            return True
        if self._horizon is None:
            return False
        if result.timestamp == self._horizon:
            return result.id in self._horizon_ids
        return result.timestamp < self._horizon

    def _remember(self, result: AnalysisResult) -> None:
        self._seen[result.id] = result.timestamp
        while len(self._seen) > self._history_size:
            forgotten_id, forgotten = self._seen.popitem(last=False)
            if self._horizon is None or forgotten > self._horizon:
                self._horizon = forgotten
                self._horizon_ids = {forgotten_id}
            elif forgotten == self._horizon:
                self._horizon_ids.add(forgotten_id)
