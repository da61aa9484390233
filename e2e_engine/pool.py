"""Admission queue and bounded worker pool."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from e2e_engine.errors import QueueError
from e2e_engine.models import ExecutionKind, ExecutionTask

logger = structlog.get_logger(__name__)


class PoolState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"


@dataclass
class ExecutionHandle:
    """What a submitter holds on to: the task, its completion future and its cancel token."""

    task: ExecutionTask
    future: asyncio.Future
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    duplicate: bool = False

    @property
    def execution_id(self) -> str:
        return self.task.execution_id

    @property
    def kind(self) -> ExecutionKind:
        return self.task.kind

    def done(self) -> bool:
        return self.future.done()

    def resolve(self, result: Any) -> None:
        if not self.future.done():
            self.future.set_result(result)


Handler = Callable[[ExecutionHandle], Awaitable[Any]]
ErrorHandler = Callable[[ExecutionHandle, BaseException], Awaitable[Any]]


class WorkerPool:
    """N workers pulling from one queue.

    Started lazily by the first :meth:`submit`. Startup is guarded by a single lock
    and tracked as NotStarted -> Starting -> Ready; a failed start resets to
    NotStarted and raises :class:`QueueError` so a later submit can retry.
    """

    def __init__(self, name: str, size: int, handler: Handler, *, on_error: ErrorHandler | None = None) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.name = name
        self.size = int(size)
        self._handler = handler
        self._on_error = on_error
        self._state = PoolState.NOT_STARTED
        self._init_lock = asyncio.Lock()
        self._queue: asyncio.Queue[ExecutionHandle] | None = None
        self._workers: list[asyncio.Task] = []
        self._running: dict[str, ExecutionHandle] = {}

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def queued(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def active(self) -> int:
        return len(self._running)

    def running_handles(self) -> list[ExecutionHandle]:
        return list(self._running.values())

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "size": self.size,
            "queued": self.queued,
            "active": self.active,
        }

    async def ensure_started(self) -> None:
        if self._state is PoolState.READY:
            return
        async with self._init_lock:
            if self._state is PoolState.READY:
                return
            self._state = PoolState.STARTING
            try:
                self._queue = asyncio.Queue()
                self._workers = self._spawn_workers()
            except Exception as exc:
                await self._reset()
                logger.error("Worker pool failed to start", pool=self.name, error=str(exc))
                raise QueueError(f"{self.name} pool failed to start: {exc}") from exc
            self._state = PoolState.READY
            logger.info("Worker pool started", pool=self.name, size=self.size)

    def _spawn_workers(self) -> list[asyncio.Task]:
        return [asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}") for i in range(self.size)]

    async def submit(self, handle: ExecutionHandle) -> None:
        """Enqueue and return immediately; never waits for a free slot."""
        await self.ensure_started()
        assert self._queue is not None
        self._queue.put_nowait(handle)
        logger.info(
            "Execution queued",
            pool=self.name,
            execution_id=handle.execution_id,
            queued=self._queue.qsize(),
            active=self.active,
        )

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            handle = await queue.get()
            self._running[handle.execution_id] = handle
            try:
                await self._process(handle)
            finally:
                self._running.pop(handle.execution_id, None)
                queue.task_done()

    async def _process(self, handle: ExecutionHandle) -> None:
        try:
            result = await self._handler(handle)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Execution crashed inside worker",
                pool=self.name,
                execution_id=handle.execution_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            if self._on_error is None:
                if not handle.future.done():
                    handle.future.set_exception(exc)
                return
            try:
                result = await self._on_error(handle, exc)
            except Exception as inner:
                logger.error("Worker error handler failed", pool=self.name, execution_id=handle.execution_id, error=str(inner))
                if not handle.future.done():
                    handle.future.set_exception(inner)
                return
        handle.resolve(result)

    def drain_queued(self) -> list[ExecutionHandle]:
        """Remove and return everything still waiting for a slot."""
        drained: list[ExecutionHandle] = []
        if self._queue is None:
            return drained
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        return drained

    async def shutdown(self) -> None:
        async with self._init_lock:
            await self._reset()
        logger.info("Worker pool stopped", pool=self.name)

    async def _reset(self) -> None:
        workers, self._workers = self._workers, []
        for w in workers:
            w.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._queue = None
        self._running.clear()
        self._state = PoolState.NOT_STARTED
