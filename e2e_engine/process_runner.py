"""Child-process supervision for one execution attempt.

One call to :meth:`ProcessRunner.run` owns a process end to end: spawn, stream
stdout/stderr into bounded buffers, enforce the wall-clock budget, classify the
exit. Children are started in their own session so a timeout or cancellation
kills the whole process group (browser processes included).
"""

from __future__ import annotations

import asyncio
import codecs
import os
import re
import shutil
import signal
import time
from collections import deque
from pathlib import Path
from typing import Mapping, Sequence

import structlog

from e2e_engine.models import OutcomeKind, ProcessOutcome

logger = structlog.get_logger(__name__)


MAX_OUTPUT_CHUNKS = 500
_READ_SIZE = 4096
# "traces/" or "trace.zip", but not "Traceback".
_TRACE_RE = re.compile(r"\btraces?\b", re.IGNORECASE)


class OutputBuffer:
    """Ring buffer of decoded output chunks; the oldest chunks are dropped past ``max_chunks``."""

    def __init__(self, max_chunks: int = MAX_OUTPUT_CHUNKS) -> None:
        self._chunks: deque[str] = deque(maxlen=max(1, int(max_chunks)))
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._chunks)

    def append(self, chunk: str) -> None:
        if len(self._chunks) == self._chunks.maxlen:
            self.dropped += 1
        self._chunks.append(chunk)

    def text(self) -> str:
        return "".join(self._chunks)


def is_trace_dir_race(stderr: str) -> bool:
    """Known transient failure: the tool lost its trace directory mid-run."""
    s = str(stderr or "")
    missing = "ENOENT" in s or "No such file or directory" in s
    return missing and _TRACE_RE.search(s) is not None


def build_child_env(
    *,
    passthrough: Sequence[str],
    passthrough_prefixes: Sequence[str] = (),
    extra: Mapping[str, str] | None = None,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Do not hand the engine's full environment to untrusted scripts: keep an
    allowlist of keys/prefixes and add the per-execution variables.
    """
    src = os.environ if source is None else source
    keep = set(passthrough)
    env: dict[str, str] = {}
    for k, v in src.items():
        if k in keep or any(k.startswith(p) for p in passthrough_prefixes):
            env[str(k)] = str(v)
    env.setdefault("HOME", "/tmp")
    if extra:
        for k, v in extra.items():
            env[str(k)] = str(v)
    return env


class ProcessRunner:
    def __init__(
        self,
        command: Sequence[str],
        *,
        max_output_chunks: int = MAX_OUTPUT_CHUNKS,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("runner command must not be empty")
        self.command = [str(c) for c in command]
        self.max_output_chunks = int(max_output_chunks)
        self.kill_grace_seconds = float(kill_grace_seconds)

    async def run(
        self,
        script_paths: Sequence[Path | str],
        report_dir: Path,
        *,
        execution_id: str,
        timeout_seconds: float | None,
        env: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
        cancel_event: asyncio.Event | None = None,
        results_dir: Path | None = None,
    ) -> ProcessOutcome:
        report_dir = Path(report_dir)
        try:
            await asyncio.to_thread(_reset_dir, report_dir)
        except OSError as exc:
            # The tool creates it again on its own; not fatal here.
            logger.warning("Could not reset report directory", execution_id=execution_id, error=str(exc))

        argv = [*self.command, *(str(p) for p in script_paths)]
        child_env = dict(env) if env is not None else dict(os.environ)
        child_env.setdefault("E2E_EXECUTION_ID", execution_id)
        child_env.setdefault("E2E_REPORT_DIR", str(report_dir))

        stdout_buf = OutputBuffer(self.max_output_chunks)
        stderr_buf = OutputBuffer(self.max_output_chunks)
        started = time.perf_counter()

        logger.info("Spawning process", execution_id=execution_id, argv=argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_env,
                cwd=str(cwd) if cwd is not None else None,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            message = f"Test process could not be started: {exc}"
            logger.error("Spawn failed", execution_id=execution_id, error=str(exc))
            return ProcessOutcome(
                kind=OutcomeKind.SPAWN_ERROR,
                exit_code=None,
                stdout="",
                stderr=str(exc),
                report_dir=report_dir,
                elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error=message,
            )

        readers = [
            asyncio.ensure_future(self._pump(proc.stdout, stdout_buf, execution_id, "stdout")),
            asyncio.ensure_future(self._pump(proc.stderr, stderr_buf, execution_id, "stderr")),
        ]
        try:
            kind = await self._supervise(proc, execution_id, timeout_seconds, cancel_event)
        except asyncio.CancelledError:
            await self._kill(proc, execution_id)
            await self._drain(readers)
            raise
        await self._drain(readers)

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        stdout = stdout_buf.text()
        stderr = stderr_buf.text()
        exit_code = proc.returncode
        logger.info(
            "Process finished",
            execution_id=execution_id,
            exit_code=exit_code,
            outcome=kind.value,
            elapsed_ms=elapsed_ms,
            dropped_chunks=stdout_buf.dropped + stderr_buf.dropped,
        )

        error: str | None = None
        if kind is OutcomeKind.TIMEOUT:
            error = f"Test execution timed out after {float(timeout_seconds or 0):g} seconds"
        elif kind is OutcomeKind.CANCELLED:
            error = "Test execution was cancelled"
        elif kind is OutcomeKind.NON_ZERO_EXIT:
            error = _failure_message(exit_code, stderr)
            if is_trace_dir_race(stderr):
                error = (
                    "Test failed due to trace file error. This is usually caused by permissions "
                    f"or directory issues. Error details: {stderr.strip()}"
                )
                # Only fixes the environment for later attempts; this one stays failed.
                recreate = results_dir if results_dir is not None else report_dir.parent
                try:
                    Path(recreate).mkdir(parents=True, exist_ok=True)
                    logger.info("Recreated results directory after trace error", execution_id=execution_id)
                except OSError as exc:
                    logger.error("Failed to recreate results directory", execution_id=execution_id, error=str(exc))

        return ProcessOutcome(
            kind=kind,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            report_dir=report_dir,
            elapsed_ms=elapsed_ms,
            error=error,
        )

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        execution_id: str,
        timeout_seconds: float | None,
        cancel_event: asyncio.Event | None,
    ) -> OutcomeKind:
        wait_task = asyncio.ensure_future(proc.wait())
        cancel_task = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        pending = {wait_task} if cancel_task is None else {wait_task, cancel_task}
        timeout = float(timeout_seconds) if timeout_seconds and timeout_seconds > 0 else None
        try:
            done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if wait_task in done:
            code = wait_task.result()
            # Make sure nothing the script left behind in its group keeps running.
            _signal_group(proc.pid, signal.SIGKILL)
            return OutcomeKind.SUCCESS if code == 0 else OutcomeKind.NON_ZERO_EXIT

        if cancel_task is not None and cancel_task in done:
            logger.warning("Execution cancelled; killing process", execution_id=execution_id)
            await self._kill(proc, execution_id)
            return OutcomeKind.CANCELLED

        logger.error("Execution timed out; killing process", execution_id=execution_id, timeout_seconds=timeout)
        await self._kill(proc, execution_id)
        return OutcomeKind.TIMEOUT

    async def _kill(self, proc: asyncio.subprocess.Process, execution_id: str) -> None:
        if proc.returncode is None:
            if not _signal_group(proc.pid, signal.SIGTERM):
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Process ignored SIGTERM; sending SIGKILL", execution_id=execution_id)
                if not _signal_group(proc.pid, signal.SIGKILL):
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
                await proc.wait()
        _signal_group(proc.pid, signal.SIGKILL)

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        buf: OutputBuffer,
        execution_id: str,
        stream_name: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_SIZE)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    buf.append(tail)
                return
            text = decoder.decode(chunk)
            if not text:
                continue
            buf.append(text)
            logger.info("Process output", execution_id=execution_id, stream=stream_name, output=text.rstrip())

    async def _drain(self, readers: list[asyncio.Future]) -> None:
        # Pipes can stay open if a grandchild escaped the process group.
        try:
            await asyncio.wait_for(asyncio.gather(*readers, return_exceptions=True), timeout=5.0)
        except asyncio.TimeoutError:
            for r in readers:
                r.cancel()
            await asyncio.gather(*readers, return_exceptions=True)


def _failure_message(exit_code: int | None, stderr: str) -> str:
    detail = str(stderr or "").strip()
    if exit_code is not None and exit_code < 0:
        msg = f"Test process crashed (killed by signal {-exit_code})"
    else:
        msg = f"Test failed with exit code {exit_code}"
    return f"{msg}: {detail}" if detail else msg


def _signal_group(pid: int | None, sig: int) -> bool:
    if pid is None or not hasattr(os, "killpg"):
        return False
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return True


def _reset_dir(path: Path) -> None:
    # Report paths are keyed by id only; a re-run must not inherit the last run's files.
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)
