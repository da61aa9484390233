from __future__ import annotations

import asyncio
import os
import threading
import time
from pathlib import Path

import pytest

from conftest import script
from e2e_engine.artifacts import LocalArtifactStore
from e2e_engine.config import EngineConfig
from e2e_engine.dedup import DUPLICATE_ERROR
from e2e_engine.engine import ExecutionEngine
from e2e_engine.errors import QueueError, ResultTimeoutError, UnknownExecutionError
from e2e_engine.models import ExecutionState, OutcomeKind, StatusEntry
from e2e_engine.pool import PoolState
from e2e_engine.process_runner import ProcessRunner
from e2e_engine.status import StatusTracker


class _RecordingTracker(StatusTracker):
    def __init__(self) -> None:
        super().__init__()
        self.history: list[tuple[str, ExecutionState]] = []

    def create(self, execution_id, kind) -> StatusEntry:
        entry = super().create(execution_id, kind)
        self.history.append((execution_id, entry.state))
        return entry

    def set(self, execution_id, entry) -> StatusEntry:
        out = super().set(execution_id, entry)
        self.history.append((execution_id, entry.state))
        return out


class _ThreadRecordingStore:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int]] = []

    def record_report(self, entity_id, entity_type, report_path, *, status="completed") -> None:
        self.calls.append((entity_id, status, threading.get_ident()))


class _ExplodingRunner(ProcessRunner):
    async def run(self, *args, **kwargs):
        raise RuntimeError("runner exploded")


async def _wait_for_state(engine: ExecutionEngine, execution_id: str, state: ExecutionState) -> StatusEntry:
    deadline = time.monotonic() + 10.0
    while time.monotonic() < deadline:
        entry = engine.get_status(execution_id)
        if entry is not None and entry.state is state:
            return entry
        await asyncio.sleep(0.02)
    raise AssertionError(f"{execution_id} never reached {state.value}")


def _report_file(cfg: EngineConfig, kind: str, execution_id: str) -> Path:
    return Path(cfg.results_dir).resolve() / kind / execution_id / "report" / "index.html"


@pytest.mark.asyncio
async def test_single_script_lifecycle(engine_config: EngineConfig) -> None:
    tracker = _RecordingTracker()
    async with ExecutionEngine(engine_config, tracker=tracker) as engine:
        handle = await engine.submit_test(script(), test_id="t1", name="Home page")
        result = await engine.await_result(handle)

    assert result.success is True
    assert result.error is None
    assert result.outcome is OutcomeKind.SUCCESS
    assert [s for i, s in tracker.history if i == "t1"] == [
        ExecutionState.PENDING,
        ExecutionState.RUNNING,
        ExecutionState.COMPLETED,
    ]
    entry = tracker.get("t1")
    assert entry.success is True
    assert entry.report_url == "/api/test-results/tests/t1/report/index.html"
    assert _report_file(engine_config, "tests", "t1").is_file()


@pytest.mark.asyncio
async def test_submit_returns_before_execution_finishes(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        handle = await engine.submit_test(script("sleep=0.5"), test_id="t1")
        assert not handle.done()
        assert engine.get_status("t1").state in (ExecutionState.PENDING, ExecutionState.RUNNING)
        result = await engine.await_result("t1")
    assert result.success is True


@pytest.mark.asyncio
async def test_pool_of_one_serializes_executions(engine_config: EngineConfig) -> None:
    engine_config.pool.max_concurrent_tests = 1
    async with ExecutionEngine(engine_config) as engine:
        a = await engine.submit_test(script("sleep=0.3"), test_id="A")
        b = await engine.submit_test(script("sleep=0.3"), test_id="B")
        await asyncio.gather(engine.await_result(a), engine.await_result(b))

        entry_a = engine.get_status("A")
        entry_b = engine.get_status("B")
    assert entry_a.is_completed and entry_b.is_completed
    assert entry_b.running_at_ts >= entry_a.completed_at_ts


@pytest.mark.asyncio
async def test_timeout_fails_and_kills_process(engine_config: EngineConfig, tmp_path: Path) -> None:
    engine_config.timeouts.test_execution_timeout_ms = 1000
    pid_file = tmp_path / "child.pid"
    async with ExecutionEngine(engine_config) as engine:
        handle = await engine.submit_test(script(f"pidfile={pid_file} FAKE:sleep=30"), test_id="slow")
        result = await engine.await_result(handle, timeout=15)

    assert result.success is False
    assert result.outcome is OutcomeKind.TIMEOUT
    assert "timed out" in result.error
    with pytest.raises(ProcessLookupError):
        os.kill(int(pid_file.read_text()), 0)
    assert engine.get_status("slow").success is False
    assert _report_file(engine_config, "tests", "slow").is_file()


@pytest.mark.asyncio
async def test_duplicate_job_within_window(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        first = await engine.submit_job("job-dup", [script("sleep=0.2")])
        second = await engine.submit_job("job-dup", [script()])

        assert second.duplicate is True
        assert second.done()
        dup = await engine.await_result(second)
        assert dup.duplicate is True
        assert dup.success is False
        assert dup.error == DUPLICATE_ERROR

        result = await engine.await_result(first)
        assert result.success is True
        # Looking up by id reaches the original execution, not the duplicate.
        assert (await engine.await_result("job-dup")) is result

    jobs_dir = Path(engine_config.results_dir).resolve() / "jobs"
    assert [p.name for p in jobs_dir.iterdir()] == ["job-dup"]


@pytest.mark.asyncio
async def test_job_with_failing_script(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        handle = await engine.submit_job("job-1", [script(), script("fail")], name="Nightly")
        result = await engine.await_result(handle)

    assert result.success is False
    assert [r.success for r in result.results] == [True, False]
    assert engine.get_status("job-1").success is False
    assert _report_file(engine_config, "jobs", "job-1").is_file()


@pytest.mark.asyncio
async def test_spawn_error_still_produces_report(engine_config: EngineConfig, tmp_path: Path) -> None:
    engine_config.runner_command = [str(tmp_path / "missing-tool")]
    async with ExecutionEngine(engine_config) as engine:
        handle = await engine.submit_test(script(), test_id="nospawn")
        result = await engine.await_result(handle)

    assert result.success is False
    assert result.outcome is OutcomeKind.SPAWN_ERROR
    assert "could not be started" in result.error
    report = _report_file(engine_config, "tests", "nospawn")
    assert report.is_file()
    assert "Test Could Not Start" in report.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_validation_failure_completes_without_spawning(engine_config: EngineConfig) -> None:
    tracker = _RecordingTracker()
    async with ExecutionEngine(engine_config, tracker=tracker) as engine:
        handle = await engine.submit_test("import os\nos.system('id')\n", test_id="bad")
        assert handle.done()
        result = await engine.await_result(handle)

    assert result.success is False
    assert result.error.startswith("Validation failed:")
    assert [s for i, s in tracker.history if i == "bad"] == [ExecutionState.PENDING, ExecutionState.COMPLETED]
    assert _report_file(engine_config, "tests", "bad").is_file()


@pytest.mark.asyncio
async def test_queue_start_failure_resets_for_retry(engine_config: EngineConfig, monkeypatch) -> None:
    async with ExecutionEngine(engine_config) as engine:
        original = engine.test_pool._spawn_workers
        calls = {"n": 0}

        def _flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("no workers today")
            return original()

        monkeypatch.setattr(engine.test_pool, "_spawn_workers", _flaky)

        with pytest.raises(QueueError):
            await engine.submit_test(script(), test_id="q1")
        assert engine.test_pool.state is PoolState.NOT_STARTED
        entry = engine.get_status("q1")
        assert entry.is_completed and entry.success is False

        handle = await engine.submit_test(script(), test_id="q1")
        result = await engine.await_result(handle)
        assert engine.test_pool.state is PoolState.READY
    assert result.success is True


@pytest.mark.asyncio
async def test_worker_crash_becomes_failed_status(engine_config: EngineConfig) -> None:
    runner = _ExplodingRunner(engine_config.runner_command)
    async with ExecutionEngine(engine_config, runner=runner) as engine:
        first = await engine.await_result(await engine.submit_test(script(), test_id="c1"))
        # The pool survives and keeps serving.
        second = await engine.await_result(await engine.submit_test(script(), test_id="c2"))

    for result in (first, second):
        assert result.success is False
        assert "runner exploded" in result.error
    assert engine.get_status("c1").is_completed
    assert _report_file(engine_config, "tests", "c1").is_file()


@pytest.mark.asyncio
async def test_cancel_running_execution(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        handle = await engine.submit_test(script("sleep=30"), test_id="long")
        await _wait_for_state(engine, "long", ExecutionState.RUNNING)
        assert engine.cancel("long") is True
        result = await engine.await_result(handle, timeout=15)

    assert result.success is False
    assert result.outcome is OutcomeKind.CANCELLED
    assert "cancelled" in result.error
    assert engine.cancel("long") is False


@pytest.mark.asyncio
async def test_cancel_queued_execution_never_runs(engine_config: EngineConfig) -> None:
    engine_config.pool.max_concurrent_tests = 1
    async with ExecutionEngine(engine_config) as engine:
        a = await engine.submit_test(script("sleep=0.5"), test_id="A")
        b = await engine.submit_test(script(), test_id="B")
        assert engine.cancel("B") is True
        result_b = await engine.await_result(b)
        await engine.await_result(a)

    assert result_b.success is False
    assert result_b.outcome is OutcomeKind.CANCELLED
    assert engine.get_status("B").running_at_ts is None
    assert _report_file(engine_config, "tests", "B").is_file()


@pytest.mark.asyncio
async def test_await_result_timeout_does_not_stop_execution(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        handle = await engine.submit_test(script("sleep=1"), test_id="t1")
        with pytest.raises(ResultTimeoutError) as excinfo:
            await engine.await_result(handle, timeout=0.1)
        assert isinstance(excinfo.value, TimeoutError)
        result = await engine.await_result(handle)
    assert result.success is True


@pytest.mark.asyncio
async def test_unknown_execution(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        assert engine.get_status("nope") is None
        with pytest.raises(UnknownExecutionError):
            await engine.await_result("nope", timeout=0.1)


@pytest.mark.asyncio
async def test_upload_only_after_success(engine_config: EngineConfig, tmp_path: Path) -> None:
    store = LocalArtifactStore(tmp_path / "store")
    async with ExecutionEngine(engine_config, artifact_store=store) as engine:
        ok = await engine.await_result(await engine.submit_test(script(), test_id="ok"))
        bad = await engine.await_result(await engine.submit_test(script("fail"), test_id="bad"))
    # shutdown waited for the background uploads

    assert ok.success and not bad.success
    assert (tmp_path / "store" / "tests" / "ok" / "report" / "index.html").is_file()
    assert not (tmp_path / "store" / "tests" / "bad").exists()


@pytest.mark.asyncio
async def test_sweep_never_purges_active_execution(engine_config: EngineConfig) -> None:
    engine_config.retention.status_retention_seconds = 0
    async with ExecutionEngine(engine_config) as engine:
        await engine.await_result(await engine.submit_test(script(), test_id="done"))
        running = await engine.submit_test(script("sleep=30"), test_id="busy")
        await _wait_for_state(engine, "busy", ExecutionState.RUNNING)

        purged = engine.sweep()
        assert "done" in purged
        assert "busy" not in purged
        assert engine.get_status("busy").state is ExecutionState.RUNNING

        engine.cancel("busy")
        await engine.await_result(running, timeout=15)


@pytest.mark.asyncio
async def test_stats(engine_config: EngineConfig) -> None:
    async with ExecutionEngine(engine_config) as engine:
        await engine.await_result(await engine.submit_test(script(), test_id="t1"))
        stats = engine.stats()
    assert stats["tests"]["state"] == "ready"
    assert stats["tests"]["size"] == 2
    assert stats["jobs"]["size"] == 1
    assert stats["jobs"]["state"] == "not_started"
    assert stats["tracked"] == 1
    assert stats["completed"] == 1
    assert stats["active"] == 0


@pytest.mark.asyncio
async def test_shutdown_fails_unfinished_executions(engine_config: EngineConfig) -> None:
    engine = ExecutionEngine(engine_config)
    handle = await engine.submit_test(script("sleep=30"), test_id="orphan")
    await _wait_for_state(engine, "orphan", ExecutionState.RUNNING)
    await engine.shutdown()

    result = await engine.await_result(handle, timeout=1)
    assert result.success is False
    assert engine.get_status("orphan").is_completed


@pytest.mark.asyncio
async def test_report_bookkeeping_stays_off_the_event_loop(engine_config: EngineConfig) -> None:
    store = _ThreadRecordingStore()
    loop_thread = threading.get_ident()
    async with ExecutionEngine(engine_config, metadata_store=store) as engine:
        await engine.await_result(await engine.submit_test(script(), test_id="ok"))
        await engine.await_result(await engine.submit_test("import os\n", test_id="invalid"))
        await engine.await_result(await engine.submit_job("j1", [script("fail")]))

    assert {(i, s) for i, s, _ in store.calls} == {("ok", "completed"), ("invalid", "failed"), ("j1", "failed")}
    assert all(ident != loop_thread for _, _, ident in store.calls)
