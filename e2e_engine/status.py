"""Status tracker: execution id -> lifecycle state.

One writer per identifier (the worker that owns it) and any number of readers
polling for completion. Writes are checked for monotonicity so a Completed entry
can never read back as Running or Pending.
"""

from __future__ import annotations

import threading
import time
from typing import Iterable

import structlog

from e2e_engine.errors import StatusTransitionError
from e2e_engine.models import ExecutionKind, ExecutionState, StatusEntry

logger = structlog.get_logger(__name__)


class StatusTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, StatusEntry] = {}
        self._active: set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._entries

    def get(self, execution_id: str) -> StatusEntry | None:
        with self._lock:
            return self._entries.get(execution_id)

    def create(self, execution_id: str, kind: ExecutionKind) -> StatusEntry:
        """Register a new Pending entry and mark the id active.

        A previous entry for the same id may only be replaced once it is Completed
        and no worker holds it any more.
        """
        entry = StatusEntry.pending(execution_id, kind)
        with self._lock:
            prev = self._entries.get(execution_id)
            if prev is not None and (not prev.is_completed or execution_id in self._active):
                raise StatusTransitionError(f"execution {execution_id} is already {prev.state.value}")
            self._entries[execution_id] = entry
            self._active.add(execution_id)
        logger.debug("Status created", execution_id=execution_id, kind=kind.value)
        return entry

    def set(self, execution_id: str, entry: StatusEntry) -> StatusEntry:
        if entry.execution_id != execution_id:
            raise StatusTransitionError(f"entry for {entry.execution_id} written under {execution_id}")
        with self._lock:
            prev = self._entries.get(execution_id)
            if prev is not None:
                _check_transition(prev.state, entry.state, execution_id)
            self._entries[execution_id] = entry
        logger.info(
            "Status updated",
            execution_id=execution_id,
            status=entry.state.value,
            success=entry.success,
        )
        return entry

    def mark_running(self, execution_id: str, *, report_url: str | None = None) -> StatusEntry:
        entry = self._require(execution_id)
        return self.set(execution_id, entry.running(report_url=report_url))

    def mark_completed(
        self,
        execution_id: str,
        *,
        success: bool,
        error: str | None,
        report_url: str | None,
    ) -> StatusEntry:
        entry = self._require(execution_id)
        return self.set(execution_id, entry.completed(success=success, error=error, report_url=report_url))

    def mark_inactive(self, execution_id: str) -> None:
        with self._lock:
            self._active.discard(execution_id)

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def active_ids(self) -> set[str]:
        with self._lock:
            return set(self._active)

    def snapshot(self) -> list[StatusEntry]:
        with self._lock:
            return list(self._entries.values())

    def sweep(self, retention_seconds: float, *, now: float | None = None) -> list[str]:
        """Purge entries older than the retention window. Active ids are never purged."""
        cutoff = (time.time() if now is None else float(now)) - float(retention_seconds)
        purged: list[str] = []
        with self._lock:
            for execution_id, entry in list(self._entries.items()):
                if execution_id in self._active:
                    continue
                if _last_touched(entry) <= cutoff:
                    del self._entries[execution_id]
                    purged.append(execution_id)
        if purged:
            logger.info("Swept status entries", purged=len(purged), remaining=len(self))
        return purged

    def _require(self, execution_id: str) -> StatusEntry:
        entry = self.get(execution_id)
        if entry is None:
            raise StatusTransitionError(f"no status entry for {execution_id}")
        return entry


def _last_touched(entry: StatusEntry) -> float:
    for ts in (entry.completed_at_ts, entry.running_at_ts, entry.created_at_ts):
        if ts is not None:
            return float(ts)
    return 0.0


def _check_transition(prev: ExecutionState, new: ExecutionState, execution_id: str) -> None:
    # Pending -> Completed is allowed for executions that never reach a process
    # (validation failures, cancellation while queued).
    if new.rank <= prev.rank:
        raise StatusTransitionError(
            f"illegal status transition for {execution_id}: {prev.value} -> {new.value}"
        )


def completed_entries(entries: Iterable[StatusEntry]) -> list[StatusEntry]:
    return [e for e in entries if e.is_completed]
