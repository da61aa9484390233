"""Job aggregation: N scripts, one process, N verdicts."""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

import structlog

from e2e_engine.dedup import DUPLICATE_ERROR, DuplicateSubmissionGuard
from e2e_engine.models import (
    VERDICT_HEURISTIC,
    VERDICT_STRUCTURED,
    ExecutionKind,
    ExecutionTask,
    JobResult,
    OutcomeKind,
    ProcessOutcome,
    ScriptVerdict,
    TestScript,
)
from e2e_engine.process_runner import ProcessRunner
from e2e_engine.reports import ReportAssembler
from e2e_engine.scripts import PreparedScript, prepare_job_scripts, write_no_scripts_placeholder
from e2e_engine.validation import Validator

logger = structlog.get_logger(__name__)


RESULT_PREFIX = "E2E_RESULT_JSON="
_RESULT_LINE_RE = re.compile(r"^E2E_RESULT_JSON=(\{.*\})\s*$")
_FAILURE_MARKER_RE = re.compile(r"\bfail(?:s|ed|ure)?\b|✘|\berror\b", re.IGNORECASE)
_PASS_STATUSES = {"pass", "passed", "ok", "success"}
_VOUCHING_OUTCOMES = (OutcomeKind.SUCCESS, OutcomeKind.NON_ZERO_EXIT)


def extract_result_json(text: str) -> dict[str, Any] | None:
    """
    The tool prints a single machine-readable line:
      E2E_RESULT_JSON={...}
    We scan the output for the last such line.
    """
    if not text:
        return None
    last = None
    for line in str(text).splitlines():
        m = _RESULT_LINE_RE.match(line.strip())
        if not m:
            continue
        last = m.group(1)
    if not last:
        return None
    try:
        data = json.loads(last)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def structured_verdicts(
    parsed: Mapping[str, Any] | None,
    filenames: Sequence[str],
) -> dict[str, tuple[bool, str | None]] | None:
    """Per-file verdicts from the tool's result line; None unless every file is covered."""
    if not parsed:
        return None
    files = parsed.get("files")
    if not isinstance(files, list):
        return None
    by_name: dict[str, tuple[bool, str | None]] = {}
    for item in files:
        if not isinstance(item, dict):
            continue
        name = Path(str(item.get("file") or "")).name
        if not name:
            continue
        status = str(item.get("status") or "").strip().lower()
        error = str(item.get("error_message") or "").strip() or None
        by_name[name] = (status in _PASS_STATUSES, error)
    if not filenames or any(f not in by_name for f in filenames):
        return None
    return {f: by_name[f] for f in filenames}


def _filename_pattern(filename: str) -> re.Pattern[str]:
    # Whole name only: "a.py" must not match inside "ba.py" or "data.py.bak".
    return re.compile(rf"(?<![\w.-]){re.escape(filename)}(?![\w-]|\.\w)")


def heuristic_verdict(stdout: str, filename: str) -> tuple[bool, str | None]:
    """Guess one file's verdict from the tool's list output.

    A file fails when the line naming it, or the line right after it, carries a
    failure marker. A file that is never mentioned fails too: a clean exit can't
    vouch for a script the tool never reported on. Batched output can't always be
    attributed to a single file, so this stays a best-effort guess.
    """
    pattern = _filename_pattern(filename)
    lines = str(stdout or "").splitlines()
    mentioned = False
    for idx, line in enumerate(lines):
        if line.lstrip().startswith(RESULT_PREFIX) or not pattern.search(line):
            continue
        mentioned = True
        candidates = [pattern.sub("", line)]
        if idx + 1 < len(lines) and ".py" not in lines[idx + 1]:
            candidates.append(lines[idx + 1])
        for text in candidates:
            if _FAILURE_MARKER_RE.search(text):
                return False, line.strip() or f"{filename} failed"
    if mentioned:
        return True, None
    return False, f"No result for {filename} in test output"


class JobAggregator:
    def __init__(
        self,
        runner: ProcessRunner,
        assembler: ReportAssembler,
        *,
        work_dir: Path | str,
        guard: DuplicateSubmissionGuard | None = None,
        validator: Validator | None = None,
        timeout_seconds: float | None = None,
        child_env: Mapping[str, str] | None = None,
    ) -> None:
        self.runner = runner
        self.assembler = assembler
        self.work_dir = Path(work_dir)
        self.guard = guard if guard is not None else DuplicateSubmissionGuard()
        self.validator = validator
        self.timeout_seconds = timeout_seconds
        self.child_env = dict(child_env) if child_env is not None else None

    def job_dir(self, job_id: str) -> Path:
        return self.work_dir / ExecutionKind.JOB.dir_name / job_id

    def admit(self, job_id: str) -> bool:
        return self.guard.claim(job_id)

    def duplicate_result(self, job_id: str) -> JobResult:
        return JobResult(
            job_id=job_id,
            success=False,
            error=DUPLICATE_ERROR,
            report_url=None,
            results=(),
            duplicate=True,
        )

    async def run_job(
        self,
        scripts: Sequence[TestScript],
        job_id: str,
        *,
        name: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> JobResult:
        """Duplicate check, then :meth:`execute`. A duplicate touches neither disk nor processes."""
        if not self.admit(job_id):
            return self.duplicate_result(job_id)
        task = ExecutionTask(execution_id=job_id, kind=ExecutionKind.JOB, scripts=tuple(scripts), name=name)
        return await self.execute(task, cancel_event=cancel_event)

    async def execute(self, task: ExecutionTask, *, cancel_event: asyncio.Event | None = None) -> JobResult:
        job_id = task.execution_id
        report_dir = self.assembler.report_dir(ExecutionKind.JOB, job_id)
        job_dir = self.job_dir(job_id)
        job_dir.mkdir(parents=True, exist_ok=True)

        prepared = await asyncio.to_thread(prepare_job_scripts, job_dir, task.scripts, validator=self.validator)
        paths = [p.path for p in prepared if p.path is not None]
        if not paths:
            paths = [write_no_scripts_placeholder(job_dir)]

        logger.info("Running job", job_id=job_id, scripts=len(task.scripts), files=len(paths))
        outcome = await self.runner.run(
            paths,
            report_dir,
            execution_id=job_id,
            timeout_seconds=self.timeout_seconds,
            env=self.child_env,
            cancel_event=cancel_event,
            results_dir=self.assembler.results_dir,
        )
        location = await asyncio.to_thread(
            self.assembler.ensure_report, report_dir, outcome, execution_id=job_id, kind=ExecutionKind.JOB
        )

        verdicts, source = self.verdicts(prepared, outcome, report_url=location.url)
        success = outcome.success and bool(verdicts) and all(v.success for v in verdicts)
        error = outcome.error
        if error is None and not success:
            failed = [v.name for v in verdicts if not v.success]
            error = f"{len(failed)} of {len(verdicts)} scripts failed: {', '.join(failed)}" if failed else "Job failed"

        result = JobResult(
            job_id=job_id,
            success=success,
            error=None if success else error,
            report_url=location.url,
            results=tuple(verdicts),
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            outcome=outcome.kind,
            verdict_source=source,
        )
        await asyncio.to_thread(self.assembler.write_job_summary, report_dir, job_summary(result))
        logger.info(
            "Job finished",
            job_id=job_id,
            success=success,
            passed=sum(1 for v in verdicts if v.success),
            total=len(verdicts),
            verdict_source=source,
        )
        return result

    def verdicts(
        self,
        prepared: Sequence[PreparedScript],
        outcome: ProcessOutcome,
        *,
        report_url: str | None,
    ) -> tuple[list[ScriptVerdict], str]:
        filenames = [p.filename for p in prepared if p.filename is not None and p.valid]
        structured = structured_verdicts(extract_result_json(outcome.stdout), filenames)
        source = VERDICT_STRUCTURED if structured is not None else VERDICT_HEURISTIC

        out: list[ScriptVerdict] = []
        for p in prepared:
            if not p.valid or p.filename is None:
                ok, err = False, p.error
            elif structured is not None:
                ok, err = structured[p.filename]
            else:
                ok, err = heuristic_verdict(outcome.stdout, p.filename)
            if ok and outcome.kind not in _VOUCHING_OUTCOMES:
                # A killed or unstarted run can't vouch for any script.
                ok, err = False, outcome.error
            out.append(
                ScriptVerdict(
                    test_id=p.script.id,
                    name=p.script.display_name,
                    success=ok,
                    error=None if ok else (err or outcome.error or "Script failed"),
                    report_url=report_url,
                )
            )
        return out, source


def job_summary(result: JobResult) -> dict[str, Any]:
    passed = sum(1 for r in result.results if r.success)
    return {
        "jobId": result.job_id,
        "success": result.success,
        "error": result.error,
        "timestamp": datetime.fromtimestamp(result.timestamp, tz=timezone.utc).isoformat(),
        "outcome": result.outcome.value if result.outcome else None,
        "verdictSource": result.verdict_source,
        "totalTests": len(result.results),
        "passedTests": passed,
        "failedTests": len(result.results) - passed,
        "results": [r.to_dict() for r in result.results],
    }
