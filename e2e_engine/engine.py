"""The execution engine: admission, dispatch, supervision and reporting wired together."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Any, Sequence, Union

import structlog

from e2e_engine.artifacts import ArtifactStore, HttpArtifactStore, LocalArtifactStore
from e2e_engine.config import EngineConfig
from e2e_engine.dedup import DuplicateSubmissionGuard
from e2e_engine.errors import QueueError, ResultTimeoutError, UnknownExecutionError
from e2e_engine.jobs import JobAggregator
from e2e_engine.metadata import MetadataStore, SqliteMetadataStore
from e2e_engine.models import (
    ExecutionKind,
    ExecutionResult,
    ExecutionTask,
    JobResult,
    OutcomeKind,
    StatusEntry,
    TestScript,
)
from e2e_engine.pool import ExecutionHandle, WorkerPool
from e2e_engine.process_runner import ProcessRunner, build_child_env
from e2e_engine.reports import ReportAssembler
from e2e_engine.scripts import write_failing_test_script, write_test_script
from e2e_engine.status import StatusTracker, completed_entries
from e2e_engine.validation import ScriptValidator, Validator

logger = structlog.get_logger(__name__)


Result = Union[ExecutionResult, JobResult]

CANCELLED_ERROR = "Test execution was cancelled"
SHUTDOWN_ERROR = "Execution engine shut down before the execution finished"


def build_artifact_store(config: EngineConfig) -> ArtifactStore | None:
    if config.artifact_store_url:
        return HttpArtifactStore(config.artifact_store_url, token=config.artifact_store_token)
    if config.artifact_store_dir:
        return LocalArtifactStore(config.artifact_store_dir)
    return None


def build_metadata_store(config: EngineConfig) -> MetadataStore | None:
    if config.metadata_db_path:
        return SqliteMetadataStore(config.metadata_db_path)
    return None


class ExecutionEngine:
    """Runs single test scripts and multi-script jobs as supervised child processes.

    Everything stateful is injected so tests can swap any collaborator. Results
    come back through :meth:`await_result` (blocking with a timeout) or
    :meth:`get_status` (polling).
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        tracker: StatusTracker | None = None,
        runner: ProcessRunner | None = None,
        assembler: ReportAssembler | None = None,
        validator: Validator | None = None,
        guard: DuplicateSubmissionGuard | None = None,
        artifact_store: ArtifactStore | None = None,
        metadata_store: MetadataStore | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        cfg = self.config
        self.tracker = tracker if tracker is not None else StatusTracker()
        self.metadata_store = metadata_store if metadata_store is not None else build_metadata_store(cfg)
        self.assembler = assembler or ReportAssembler(
            cfg.results_path(),
            url_prefix=cfg.report_url_prefix,
            metadata_store=self.metadata_store,
        )
        self.runner = runner or ProcessRunner(
            cfg.runner_command,
            max_output_chunks=cfg.max_output_chunks,
            kill_grace_seconds=cfg.timeouts.kill_grace_seconds,
        )
        self.validator = validator if validator is not None else ScriptValidator()
        self.artifact_store = artifact_store if artifact_store is not None else build_artifact_store(cfg)
        self.work_dir = cfg.work_path()
        extra = {"BASE_URL": cfg.base_url} if cfg.base_url else None
        self.child_env = build_child_env(
            passthrough=cfg.env_passthrough,
            passthrough_prefixes=cfg.env_passthrough_prefixes,
            extra=extra,
        )
        self.guard = guard or DuplicateSubmissionGuard(
            max_tracked=cfg.retention.duplicate_max_tracked,
            window_seconds=cfg.retention.duplicate_window_seconds,
        )
        self.jobs = JobAggregator(
            self.runner,
            self.assembler,
            work_dir=self.work_dir,
            guard=self.guard,
            validator=self.validator,
            timeout_seconds=cfg.timeouts.job_timeout_seconds,
            child_env=self.child_env,
        )
        self.test_pool = WorkerPool(
            "tests", cfg.pool.max_concurrent_tests, self._run_handle, on_error=self._handle_crash
        )
        self.job_pool = WorkerPool("jobs", cfg.pool.job_pool_size, self._run_handle, on_error=self._handle_crash)

        self._handles: dict[str, ExecutionHandle] = {}
        self._uploads: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    async def __aenter__(self) -> "ExecutionEngine":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    # Submission

    async def submit_test(
        self,
        script: Union[str, TestScript],
        *,
        name: str | None = None,
        test_id: str | None = None,
    ) -> ExecutionHandle:
        """Queue one script. Returns at once; the handle resolves to an :class:`ExecutionResult`."""
        if isinstance(script, TestScript):
            test = script
        else:
            test = TestScript(id=test_id or str(uuid.uuid4()), script=str(script), name=name)
        task = ExecutionTask(execution_id=test.id, kind=ExecutionKind.TEST, scripts=(test,), name=test.name)

        self.tracker.create(task.execution_id, task.kind)
        handle = self._new_handle(task)

        outcome = self.validator.validate(test.script)
        if not outcome.valid:
            result = await asyncio.to_thread(self._reject_invalid_test, task, outcome.error or "Script validation failed")
            handle.resolve(result)
            return handle

        await self._enqueue(self.test_pool, handle)
        return handle

    async def submit_job(
        self,
        job_id: str,
        scripts: Sequence[Union[str, TestScript]],
        *,
        name: str | None = None,
    ) -> ExecutionHandle:
        """Queue a job. Literal re-submission inside the tracking window returns a resolved duplicate handle."""
        tests = tuple(
            s if isinstance(s, TestScript) else TestScript(id=f"{job_id}-{i + 1}", script=str(s))
            for i, s in enumerate(scripts)
        )
        task = ExecutionTask(execution_id=job_id, kind=ExecutionKind.JOB, scripts=tests, name=name)
        loop = asyncio.get_running_loop()

        if not self.jobs.admit(job_id):
            future = loop.create_future()
            future.set_result(self.jobs.duplicate_result(job_id))
            return ExecutionHandle(task=task, future=future, duplicate=True)

        try:
            self.tracker.create(job_id, ExecutionKind.JOB)
        except Exception:
            self.guard.release(job_id)
            raise
        handle = self._new_handle(task)
        try:
            await self._enqueue(self.job_pool, handle)
        except QueueError:
            self.guard.release(job_id)
            raise
        return handle

    def _new_handle(self, task: ExecutionTask) -> ExecutionHandle:
        handle = ExecutionHandle(task=task, future=asyncio.get_running_loop().create_future())
        self._handles[task.execution_id] = handle
        return handle

    async def _enqueue(self, pool: WorkerPool, handle: ExecutionHandle) -> None:
        self._ensure_sweeper()
        try:
            await pool.submit(handle)
        except QueueError as exc:
            await self._finish(
                handle, self._failure_result(handle, str(exc), OutcomeKind.SPAWN_ERROR), report_heading="Queue Error"
            )
            raise

    # Worker side

    async def _run_handle(self, handle: ExecutionHandle) -> Result:
        task = handle.task
        if handle.cancel_event.is_set():
            logger.info("Execution cancelled while queued", execution_id=task.execution_id)
            return await self._finish(
                handle,
                self._failure_result(handle, CANCELLED_ERROR, OutcomeKind.CANCELLED),
                report_heading="Cancelled",
            )

        self.tracker.mark_running(task.execution_id, report_url=self.assembler.report_url(task.kind, task.execution_id))
        if task.is_job:
            result: Result = await self.jobs.execute(task, cancel_event=handle.cancel_event)
        else:
            result = await self._execute_test(task, handle.cancel_event)
        return await self._finish(handle, result)

    async def _execute_test(self, task: ExecutionTask, cancel_event: asyncio.Event) -> ExecutionResult:
        test = task.scripts[0]
        work_dir = self.work_dir / ExecutionKind.TEST.dir_name / task.execution_id
        script_path = await asyncio.to_thread(write_test_script, work_dir, test)
        report_dir = self.assembler.report_dir(ExecutionKind.TEST, task.execution_id)

        outcome = await self.runner.run(
            [script_path],
            report_dir,
            execution_id=task.execution_id,
            timeout_seconds=self.config.timeouts.test_timeout_seconds,
            env=self.child_env,
            cancel_event=cancel_event,
            results_dir=self.assembler.results_dir,
        )
        location = await asyncio.to_thread(
            self.assembler.ensure_report, report_dir, outcome, execution_id=task.execution_id, kind=task.kind
        )
        return ExecutionResult(
            execution_id=task.execution_id,
            success=outcome.success,
            error=outcome.error,
            report_url=location.url,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            outcome=outcome.kind,
        )

    async def _handle_crash(self, handle: ExecutionHandle, exc: BaseException) -> Result:
        message = f"Execution failed: {type(exc).__name__}: {exc}"
        return await self._finish(
            handle, self._failure_result(handle, message, None), report_heading="Execution Error"
        )

    def _reject_invalid_test(self, task: ExecutionTask, error: str) -> ExecutionResult:
        message = f"Validation failed: {error}"
        work_dir = self.work_dir / ExecutionKind.TEST.dir_name / task.execution_id
        try:
            write_failing_test_script(work_dir, task.scripts[0], message)
        except OSError as exc:
            logger.warning("Could not write placeholder script", execution_id=task.execution_id, error=str(exc))
        location = self.assembler.write_error_report(
            execution_id=task.execution_id,
            kind=task.kind,
            heading="Test Validation Failed",
            message=message,
            outcome="validation_error",
        )
        result = ExecutionResult(
            execution_id=task.execution_id,
            success=False,
            error=message,
            report_url=location.url,
        )
        self._complete_status(task, result)
        logger.warning("Test rejected by validation", execution_id=task.execution_id, error=error)
        return result

    def _failure_result(self, handle: ExecutionHandle, message: str, outcome: OutcomeKind | None) -> Result:
        task = handle.task
        url = self.assembler.report_url(task.kind, task.execution_id)
        if task.is_job:
            return JobResult(job_id=task.execution_id, success=False, error=message, report_url=url, outcome=outcome)
        return ExecutionResult(execution_id=task.execution_id, success=False, error=message, report_url=url, outcome=outcome)

    async def _finish(self, handle: ExecutionHandle, result: Result, *, report_heading: str | None = None) -> Result:
        """Completed status, report guarantee, background upload. Runs exactly once per execution."""
        task = handle.task
        if report_heading is not None:
            label = "Job" if task.is_job else "Test"
            try:
                await asyncio.to_thread(
                    self.assembler.write_error_report,
                    execution_id=task.execution_id,
                    kind=task.kind,
                    heading=f"{label} {report_heading}",
                    message=result.error or f"{label} failed",
                )
            except OSError as exc:
                logger.error("Could not write error report", execution_id=task.execution_id, error=str(exc))
        self._complete_status(task, result)
        handle.resolve(result)
        if result.success:
            self._schedule_upload(task.kind, task.execution_id)
        return result

    def _complete_status(self, task: ExecutionTask, result: Result) -> None:
        entry = self.tracker.get(task.execution_id)
        if entry is not None and not entry.is_completed:
            self.tracker.mark_completed(
                task.execution_id,
                success=result.success,
                error=result.error,
                report_url=result.report_url,
            )
        self.tracker.mark_inactive(task.execution_id)

    # Uploads

    def _schedule_upload(self, kind: ExecutionKind, execution_id: str) -> None:
        if self.artifact_store is None:
            return
        key = self.assembler.relative_report_path(kind, execution_id)
        report_dir = self.assembler.report_dir(kind, execution_id)
        t = asyncio.create_task(self._upload(report_dir, key, execution_id), name=f"upload-{execution_id}")
        self._uploads.add(t)
        t.add_done_callback(self._uploads.discard)

    async def _upload(self, report_dir: Path, key: str, execution_id: str) -> None:
        assert self.artifact_store is not None
        try:
            await self.artifact_store.upload(report_dir, key)
        except Exception as exc:
            # Completion is already reported; a failed upload only loses the remote copy.
            logger.error("Report upload failed", execution_id=execution_id, key=key, error=str(exc))

    # Caller API

    def get_status(self, execution_id: str) -> StatusEntry | None:
        return self.tracker.get(execution_id)

    async def await_result(
        self,
        handle_or_id: Union[ExecutionHandle, str],
        timeout: float | None = None,
    ) -> Result:
        """Wait for completion. Giving up raises :class:`ResultTimeoutError`; the execution keeps running."""
        handle = self._resolve_handle(handle_or_id)
        if timeout is None:
            timeout = self.default_await_timeout(handle.kind)
        try:
            return await asyncio.wait_for(asyncio.shield(handle.future), timeout=timeout)
        except asyncio.TimeoutError:
            raise ResultTimeoutError(
                f"Timed out after {timeout:g} seconds waiting for execution {handle.execution_id}"
            ) from None

    def default_await_timeout(self, kind: ExecutionKind) -> float:
        if kind is ExecutionKind.JOB:
            return self.config.timeouts.job_timeout_seconds * 2
        return self.config.timeouts.test_timeout_seconds

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation. Returns False if the execution is unknown or already finished."""
        handle = self._handles.get(execution_id)
        if handle is None or handle.done():
            return False
        handle.cancel_event.set()
        logger.info("Cancellation requested", execution_id=execution_id)
        return True

    def _resolve_handle(self, handle_or_id: Union[ExecutionHandle, str]) -> ExecutionHandle:
        if isinstance(handle_or_id, ExecutionHandle):
            return handle_or_id
        handle = self._handles.get(str(handle_or_id))
        if handle is None:
            raise UnknownExecutionError(str(handle_or_id))
        return handle

    def stats(self) -> dict[str, Any]:
        entries = self.tracker.snapshot()
        return {
            "tests": self.test_pool.stats(),
            "jobs": self.job_pool.stats(),
            "tracked": len(entries),
            "completed": len(completed_entries(entries)),
            "active": len(self.tracker.active_ids()),
            "pending_uploads": len(self._uploads),
            "recent_job_ids": len(self.guard),
        }

    # Housekeeping

    def sweep(self) -> list[str]:
        purged = self.tracker.sweep(self.config.retention.status_retention_seconds)
        for execution_id in purged:
            handle = self._handles.get(execution_id)
            if handle is not None and handle.done():
                del self._handles[execution_id]
        return purged

    def _ensure_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="status-sweeper")

    async def _sweep_loop(self) -> None:
        interval = self.config.retention.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("Status sweep failed", error=str(exc))

    async def shutdown(self) -> None:
        """Stop the pools, fail whatever never finished and wait for pending uploads."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        leftovers: list[ExecutionHandle] = []
        for pool in (self.test_pool, self.job_pool):
            leftovers.extend(pool.drain_queued())
            leftovers.extend(pool.running_handles())
            await pool.shutdown()
        failed = 0
        for handle in leftovers:
            if not handle.done():
                failed += 1
                await self._finish(
                    handle,
                    self._failure_result(handle, SHUTDOWN_ERROR, OutcomeKind.CANCELLED),
                    report_heading="Cancelled",
                )

        if self._uploads:
            await asyncio.gather(*list(self._uploads), return_exceptions=True)
        logger.info("Execution engine stopped", failed_on_shutdown=failed)
