import threading
from collections import deque
from typing import Deque, Dict, Optional

from . import storage


class SuccessTracker:
    """Rolling success rate per engine over the last `window` outcomes."""

    def __init__(self, window: int = 20):
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window
        self._lock = threading.Lock()
        self._outcomes: Dict[str, Deque[bool]] = {}

    def record(self, engine_id: str, ok: bool) -> None:
        with self._lock:
            bucket = self._outcomes.get(engine_id)
            if bucket is None:
                bucket = self._outcomes[engine_id] = deque(maxlen=self.window)
            bucket.append(bool(ok))

    def rate(self, engine_id: str) -> Optional[float]:
        """Fraction of recent successes, or None with no history."""
        with self._lock:
            bucket = self._outcomes.get(engine_id)
            if not bucket:
                return None
            return sum(bucket) / len(bucket)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {k: sum(v) / len(v) for k, v in self._outcomes.items() if v}

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()


class StoredSuccessTracker(SuccessTracker):
    """
    Success rates kept in the queue database, so outcomes recorded by worker
    processes and callbacks count for the next route in any process.
    """

    def record(self, engine_id: str, ok: bool) -> None:
        storage.record_outcome(engine_id, ok, keep=max(self.window, 100))

    def rate(self, engine_id: str) -> Optional[float]:
        outcomes = storage.recent_outcomes(engine_id, self.window)
        if not outcomes:
            return None
        return sum(outcomes) / len(outcomes)

    def snapshot(self) -> Dict[str, float]:
        rates = {engine_id: self.rate(engine_id) for engine_id in storage.outcome_engines()}
        return {k: v for k, v in rates.items() if v is not None}

    def reset(self) -> None:
        storage.clear_outcomes()


_default_tracker: Optional[SuccessTracker] = None
_default_lock = threading.Lock()


def get_success_tracker(window: Optional[int] = None) -> SuccessTracker:
    """Process-wide database-backed tracker; `window` only applies when it is first created."""
    global _default_tracker
    with _default_lock:
        if _default_tracker is None:
            _default_tracker = StoredSuccessTracker(window or 20)
        return _default_tracker
