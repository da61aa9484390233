"""Error taxonomy for the execution engine.

Execution-side failures (validation, spawn, script failure, timeout) never escape a
worker: they end up as a Completed status entry with ``success=False``. The classes
below exist so the message text and the callers that *do* see exceptions (queue
startup, result waits, API misuse) can tell causes apart.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """Script rejected by static validation before it reached a process."""


class SpawnError(EngineError):
    """The child process could not even be started."""


class ScriptFailure(EngineError):
    """The child process ran and exited non-zero."""


class ExecutionTimeoutError(EngineError):
    """The child process exceeded its wall-clock budget and was killed."""


class QueueError(EngineError):
    """The dispatcher failed to start; the pool is reset so a later call can retry."""


class ResultTimeoutError(EngineError, TimeoutError):
    """A caller gave up waiting for a result. The execution itself keeps running."""


class StatusTransitionError(EngineError):
    """A status write would regress or skip a lifecycle state."""


class UnknownExecutionError(EngineError, KeyError):
    """No execution with the given identifier is known to the engine."""


class ReportMissingWarning(UserWarning):
    """The tool did not write the expected report; a fallback is synthesized."""
