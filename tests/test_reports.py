from __future__ import annotations

import json
from pathlib import Path

from e2e_engine.metadata import SqliteMetadataStore
from e2e_engine.models import ExecutionKind, OutcomeKind, ProcessOutcome
from e2e_engine.reports import ReportAssembler


def _outcome(kind: OutcomeKind, report_dir: Path, **kwargs) -> ProcessOutcome:
    return ProcessOutcome(
        kind=kind,
        exit_code=kwargs.pop("exit_code", 0 if kind is OutcomeKind.SUCCESS else 1),
        stdout=kwargs.pop("stdout", ""),
        stderr=kwargs.pop("stderr", ""),
        report_dir=report_dir,
        **kwargs,
    )


class _BrokenMetadataStore:
    def record_report(self, entity_id, entity_type, report_path, *, status="completed") -> None:
        raise RuntimeError("db down")


def test_report_paths_are_keyed_by_kind_and_id(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path, url_prefix="/api/test-results/")
    assert assembler.report_dir(ExecutionKind.TEST, "t1") == tmp_path / "tests" / "t1" / "report"
    assert assembler.report_dir(ExecutionKind.JOB, "j1") == tmp_path / "jobs" / "j1" / "report"
    assert assembler.report_url(ExecutionKind.JOB, "j1") == "/api/test-results/jobs/j1/report/index.html"


def test_existing_tool_report_is_kept(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path)
    report_dir = assembler.report_dir(ExecutionKind.TEST, "t1")
    report_dir.mkdir(parents=True)
    (report_dir / "index.html").write_text("tool report", encoding="utf-8")

    loc = assembler.ensure_report(
        report_dir, _outcome(OutcomeKind.SUCCESS, report_dir), execution_id="t1", kind=ExecutionKind.TEST
    )
    assert loc.synthesized is False
    assert loc.path.read_text(encoding="utf-8") == "tool report"


def test_missing_report_is_synthesized_with_output(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path)
    report_dir = assembler.report_dir(ExecutionKind.TEST, "t1")
    outcome = _outcome(
        OutcomeKind.NON_ZERO_EXIT,
        report_dir,
        stdout="<step 1>",
        stderr="boom",
        error="Test failed with exit code 1: boom",
    )
    loc = assembler.ensure_report(report_dir, outcome, execution_id="t1", kind=ExecutionKind.TEST)

    html = loc.path.read_text(encoding="utf-8")
    assert loc.synthesized is True
    assert "Synthesized report" in html
    assert "Test Error" in html
    assert "Test failed with exit code 1: boom" in html
    # Output is escaped, not injected.
    assert "&lt;step 1&gt;" in html


def test_timeout_report_is_distinguishable(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path)
    report_dir = assembler.report_dir(ExecutionKind.JOB, "j1")
    outcome = _outcome(
        OutcomeKind.TIMEOUT, report_dir, exit_code=-15, error="Test execution timed out after 900 seconds"
    )
    loc = assembler.ensure_report(report_dir, outcome, execution_id="j1", kind=ExecutionKind.JOB)
    html = loc.path.read_text(encoding="utf-8")
    assert "Job Timed Out" in html
    assert "timed out after 900 seconds" in html


def test_spawn_error_still_gets_a_report(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path)
    report_dir = assembler.report_dir(ExecutionKind.TEST, "t1")
    outcome = _outcome(OutcomeKind.SPAWN_ERROR, report_dir, exit_code=None, error="Test process could not be started")
    loc = assembler.ensure_report(report_dir, outcome, execution_id="t1", kind=ExecutionKind.TEST)
    assert loc.path.is_file()
    assert "Test Could Not Start" in loc.path.read_text(encoding="utf-8")


def test_metadata_is_recorded(tmp_path: Path) -> None:
    store = SqliteMetadataStore(str(tmp_path / "meta.db"))
    assembler = ReportAssembler(tmp_path / "results", metadata_store=store)
    report_dir = assembler.report_dir(ExecutionKind.JOB, "j1")
    assembler.ensure_report(report_dir, _outcome(OutcomeKind.SUCCESS, report_dir), execution_id="j1", kind=ExecutionKind.JOB)

    row = store.get_report("j1", "job")
    assert row is not None
    assert row["report_path"] == "/jobs/j1/report"
    assert row["status"] == "completed"
    store.close()


def test_metadata_failure_does_not_fail_report(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path, metadata_store=_BrokenMetadataStore())
    report_dir = assembler.report_dir(ExecutionKind.TEST, "t1")
    loc = assembler.ensure_report(
        report_dir, _outcome(OutcomeKind.SUCCESS, report_dir), execution_id="t1", kind=ExecutionKind.TEST
    )
    assert loc.path.is_file()


def test_error_report_and_job_summary(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path)
    loc = assembler.write_error_report(
        execution_id="t1",
        kind=ExecutionKind.TEST,
        heading="Test Validation Failed",
        message="Validation failed: Security Error: Importing module 'os' is not allowed.",
    )
    assert "Test Validation Failed" in loc.path.read_text(encoding="utf-8")

    summary_path = assembler.write_job_summary(assembler.report_dir(ExecutionKind.JOB, "j1"), {"jobId": "j1"})
    assert json.loads(summary_path.read_text(encoding="utf-8")) == {"jobId": "j1"}


def test_metadata_status_follows_outcome(tmp_path: Path) -> None:
    store = SqliteMetadataStore(str(tmp_path / "meta.db"))
    assembler = ReportAssembler(tmp_path / "results", metadata_store=store)
    report_dir = assembler.report_dir(ExecutionKind.TEST, "t1")
    report_dir.mkdir(parents=True)
    (report_dir / "index.html").write_text("tool report", encoding="utf-8")

    # The tool wrote a report but the run failed.
    outcome = _outcome(OutcomeKind.NON_ZERO_EXIT, report_dir, error="Test failed with exit code 1")
    assembler.ensure_report(report_dir, outcome, execution_id="t1", kind=ExecutionKind.TEST)
    assert store.get_report("t1", "test")["status"] == "failed"

    report_dir = assembler.report_dir(ExecutionKind.TEST, "t2")
    assembler.ensure_report(report_dir, _outcome(OutcomeKind.TIMEOUT, report_dir), execution_id="t2", kind=ExecutionKind.TEST)
    assert store.get_report("t2", "test")["status"] == "failed"
    store.close()


def test_error_report_replaces_tool_report(tmp_path: Path) -> None:
    assembler = ReportAssembler(tmp_path)
    report_dir = assembler.report_dir(ExecutionKind.TEST, "t1")
    report_dir.mkdir(parents=True)
    (report_dir / "index.html").write_text("tool report", encoding="utf-8")

    loc = assembler.write_error_report(
        execution_id="t1", kind=ExecutionKind.TEST, heading="Test Cancelled", message="Test execution was cancelled"
    )
    html = loc.path.read_text(encoding="utf-8")
    assert "tool report" not in html
    assert "Test Cancelled" in html
