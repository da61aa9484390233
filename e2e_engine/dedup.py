from __future__ import annotations

import threading
import time
from collections import OrderedDict

import structlog

logger = structlog.get_logger(__name__)


DUPLICATE_ERROR = "This job was already executed recently. Please check previous runs."


class DuplicateSubmissionGuard:
    """Bounded cache of recently submitted job ids.

    Only literal re-submission of the same id inside the tracking window is
    rejected; distinct ids never block each other. The oldest id is evicted once
    more than ``max_tracked`` ids are remembered.
    """

    def __init__(self, *, max_tracked: int = 100, window_seconds: float = 3600.0) -> None:
        self.max_tracked = max(1, int(max_tracked))
        self.window_seconds = float(window_seconds)
        self._lock = threading.Lock()
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._seen and not self._expired(self._seen[job_id], time.time())

    def claim(self, job_id: str, *, now: float | None = None) -> bool:
        """Record ``job_id``. Returns False if it is a duplicate within the window."""
        ts = time.time() if now is None else float(now)
        with self._lock:
            seen_at = self._seen.get(job_id)
            if seen_at is not None and not self._expired(seen_at, ts):
                logger.warning("Duplicate job submission rejected", job_id=job_id)
                return False
            self._seen.pop(job_id, None)
            self._seen[job_id] = ts
            while len(self._seen) > self.max_tracked:
                evicted, _ = self._seen.popitem(last=False)
                logger.debug("Duplicate guard evicted job id", job_id=evicted)
        return True

    def release(self, job_id: str) -> None:
        with self._lock:
            self._seen.pop(job_id, None)

    def _expired(self, seen_at: float, now: float) -> bool:
        return (now - seen_at) > self.window_seconds
