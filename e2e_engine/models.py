from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from e2e_engine.errors import EngineError, ExecutionTimeoutError, ScriptFailure, SpawnError


def _utc_ts() -> float:
    return float(time.time())


class ExecutionKind(str, Enum):
    TEST = "test"
    JOB = "job"

    @property
    def dir_name(self) -> str:
        # Report paths are keyed by the plural form: tests/<id>/report, jobs/<id>/report.
        return f"{self.value}s"


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {
    ExecutionState.PENDING: 0,
    ExecutionState.RUNNING: 1,
    ExecutionState.COMPLETED: 2,
}


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TestScript:
    __test__ = False  # not a pytest test class

    id: str
    script: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or f"Test {self.id}"


@dataclass(frozen=True)
class ExecutionTask:
    """One unit of work accepted by the admission queue. Immutable once enqueued."""

    execution_id: str
    kind: ExecutionKind
    scripts: tuple[TestScript, ...]
    name: str | None = None
    submitted_at_ts: float = field(default_factory=_utc_ts)

    @property
    def is_job(self) -> bool:
        return self.kind is ExecutionKind.JOB


@dataclass(frozen=True)
class StatusEntry:
    execution_id: str
    kind: ExecutionKind
    state: ExecutionState
    success: bool | None = None
    error: str | None = None
    report_url: str | None = None
    created_at_ts: float = field(default_factory=_utc_ts)
    running_at_ts: float | None = None
    completed_at_ts: float | None = None

    @classmethod
    def pending(cls, execution_id: str, kind: ExecutionKind) -> "StatusEntry":
        return cls(execution_id=execution_id, kind=kind, state=ExecutionState.PENDING)

    def running(self, *, report_url: str | None = None) -> "StatusEntry":
        return replace(
            self,
            state=ExecutionState.RUNNING,
            report_url=report_url or self.report_url,
            running_at_ts=_utc_ts(),
        )

    def completed(self, *, success: bool, error: str | None, report_url: str | None) -> "StatusEntry":
        return replace(
            self,
            state=ExecutionState.COMPLETED,
            success=bool(success),
            error=error,
            report_url=report_url or self.report_url,
            completed_at_ts=_utc_ts(),
        )

    @property
    def is_completed(self) -> bool:
        return self.state is ExecutionState.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "kind": self.kind.value,
            "status": self.state.value,
            "success": self.success,
            "error": self.error,
            "report_url": self.report_url,
            "created_at_ts": self.created_at_ts,
            "running_at_ts": self.running_at_ts,
            "completed_at_ts": self.completed_at_ts,
        }


@dataclass(frozen=True)
class ProcessOutcome:
    kind: OutcomeKind
    exit_code: int | None
    stdout: str
    stderr: str
    report_dir: Path
    elapsed_ms: float | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def raise_for_outcome(self) -> None:
        """Raise the matching :class:`EngineError` unless the process exited cleanly."""
        if self.success:
            return
        message = self.error or self.kind.value
        if self.kind is OutcomeKind.SPAWN_ERROR:
            raise SpawnError(message)
        if self.kind is OutcomeKind.TIMEOUT:
            raise ExecutionTimeoutError(message)
        if self.kind is OutcomeKind.NON_ZERO_EXIT:
            raise ScriptFailure(message)
        raise EngineError(message)


@dataclass(frozen=True)
class ReportLocation:
    path: Path
    url: str
    synthesized: bool = False


@dataclass(frozen=True)
class ExecutionResult:
    execution_id: str
    success: bool
    error: str | None
    report_url: str | None
    stdout: str = ""
    stderr: str = ""
    outcome: OutcomeKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.execution_id,
            "success": self.success,
            "error": self.error,
            "report_url": self.report_url,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "outcome": self.outcome.value if self.outcome else None,
        }


@dataclass(frozen=True)
class ScriptVerdict:
    test_id: str
    name: str
    success: bool
    error: str | None = None
    report_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "name": self.name,
            "success": self.success,
            "error": self.error,
            "report_url": self.report_url,
        }


VERDICT_STRUCTURED = "structured"
VERDICT_HEURISTIC = "heuristic"


@dataclass(frozen=True)
class JobResult:
    job_id: str
    success: bool
    error: str | None
    report_url: str | None
    results: tuple[ScriptVerdict, ...] = ()
    timestamp: float = field(default_factory=_utc_ts)
    stdout: str = ""
    stderr: str = ""
    outcome: OutcomeKind | None = None
    verdict_source: str | None = None
    duplicate: bool = False

    @property
    def execution_id(self) -> str:
        return self.job_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "success": self.success,
            "error": self.error,
            "report_url": self.report_url,
            "results": [r.to_dict() for r in self.results],
            "timestamp": self.timestamp,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "outcome": self.outcome.value if self.outcome else None,
            "verdict_source": self.verdict_source,
            "duplicate": self.duplicate,
        }
