"""Report assembly: every finished execution gets an HTML report at a stable path."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from e2e_engine.errors import ReportMissingWarning
from e2e_engine.metadata import MetadataStore
from e2e_engine.models import ExecutionKind, OutcomeKind, ProcessOutcome, ReportLocation

logger = structlog.get_logger(__name__)


REPORT_FILENAME = "index.html"
JOB_SUMMARY_FILENAME = "job-summary.json"
_TEMPLATE_NAME = "synthesized_report.html"

_HEADINGS = {
    OutcomeKind.SUCCESS: ("{label} Completed Successfully", "success"),
    OutcomeKind.NON_ZERO_EXIT: ("{label} Error", "failure"),
    OutcomeKind.TIMEOUT: ("{label} Timed Out", "timeout"),
    OutcomeKind.SPAWN_ERROR: ("{label} Could Not Start", "failure"),
    OutcomeKind.CANCELLED: ("{label} Cancelled", "timeout"),
}


class ReportAssembler:
    """Owns the ``{results_dir}/{tests|jobs}/{id}/report/index.html`` layout."""

    def __init__(
        self,
        results_dir: Path | str,
        *,
        url_prefix: str = "/api/test-results",
        metadata_store: MetadataStore | None = None,
    ) -> None:
        self.results_dir = Path(results_dir)
        self.url_prefix = "/" + str(url_prefix or "").strip("/") if str(url_prefix or "").strip("/") else ""
        self.metadata_store = metadata_store
        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
        )

    def relative_report_path(self, kind: ExecutionKind, execution_id: str) -> str:
        return f"{kind.dir_name}/{execution_id}/report"

    def execution_dir(self, kind: ExecutionKind, execution_id: str) -> Path:
        return self.results_dir / kind.dir_name / execution_id

    def report_dir(self, kind: ExecutionKind, execution_id: str) -> Path:
        return self.execution_dir(kind, execution_id) / "report"

    def report_url(self, kind: ExecutionKind, execution_id: str) -> str:
        return f"{self.url_prefix}/{self.relative_report_path(kind, execution_id)}/{REPORT_FILENAME}"

    def ensure_report(
        self,
        report_dir: Path,
        outcome: ProcessOutcome,
        *,
        execution_id: str,
        kind: ExecutionKind,
    ) -> ReportLocation:
        """Return the tool's report if it exists, otherwise synthesize a minimal one."""
        report_path = Path(report_dir) / REPORT_FILENAME
        status = "completed" if outcome.success else "failed"
        if report_path.is_file():
            self.record_metadata(execution_id, kind, status=status)
            return ReportLocation(path=report_path, url=self.report_url(kind, execution_id), synthesized=False)

        logger.warning(
            "No HTML report produced; synthesizing fallback",
            execution_id=execution_id,
            outcome=outcome.kind.value,
            category=ReportMissingWarning.__name__,
        )
        heading_tpl, variant = _HEADINGS[outcome.kind]
        label = "Job" if kind is ExecutionKind.JOB else "Test"
        if outcome.kind is OutcomeKind.SUCCESS:
            message = f"Your {label.lower()} ran successfully, but the test tool did not write a report."
        else:
            message = outcome.error or f"{label} failed"
        self.synthesize(
            Path(report_dir),
            execution_id=execution_id,
            kind=kind,
            heading=heading_tpl.format(label=label),
            message=message,
            variant=variant,
            outcome=outcome.kind.value,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=outcome.exit_code,
            elapsed_ms=outcome.elapsed_ms,
        )
        self.record_metadata(execution_id, kind, status=status)
        return ReportLocation(path=report_path, url=self.report_url(kind, execution_id), synthesized=True)

    def write_error_report(
        self,
        *,
        execution_id: str,
        kind: ExecutionKind,
        heading: str,
        message: str,
        outcome: str = "failure",
        stdout: str = "",
        stderr: str = "",
    ) -> ReportLocation:
        """Report for failures decided by the engine itself (validation, queue, cancel, crash).

        Always replaces whatever sits at the report path.
        """
        report_dir = self.report_dir(kind, execution_id)
        report_path = self.synthesize(
            report_dir,
            execution_id=execution_id,
            kind=kind,
            heading=heading,
            message=message,
            variant="failure",
            outcome=outcome,
            stdout=stdout,
            stderr=stderr,
        )
        self.record_metadata(execution_id, kind, status="failed")
        return ReportLocation(path=report_path, url=self.report_url(kind, execution_id), synthesized=True)

    def synthesize(
        self,
        report_dir: Path,
        *,
        execution_id: str,
        kind: ExecutionKind,
        heading: str,
        message: str,
        variant: str,
        outcome: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
        elapsed_ms: float | None = None,
    ) -> Path:
        html = self.jinja_env.get_template(_TEMPLATE_NAME).render(
            execution_id=execution_id,
            kind_label="Job" if kind is ExecutionKind.JOB else "Test",
            heading=heading,
            message=message,
            variant=variant,
            outcome=outcome,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            elapsed_ms=elapsed_ms,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )
        path = Path(report_dir) / REPORT_FILENAME
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(html, encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to write synthesized report", execution_id=execution_id, path=str(path), error=str(exc))
            raise
        logger.info("Wrote synthesized report", execution_id=execution_id, path=str(path))
        return path

    def write_job_summary(self, report_dir: Path, summary: dict[str, Any]) -> Path | None:
        path = Path(report_dir) / JOB_SUMMARY_FILENAME
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to write job summary", path=str(path), error=str(exc))
            return None
        return path

    def record_metadata(self, execution_id: str, kind: ExecutionKind, *, status: str = "completed") -> None:
        if self.metadata_store is None:
            return
        try:
            self.metadata_store.record_report(
                execution_id,
                kind.value,
                "/" + self.relative_report_path(kind, execution_id),
                status=status,
            )
        except Exception as exc:
            # Metadata is best-effort; the execution result stands.
            logger.error("Error storing report metadata", execution_id=execution_id, kind=kind.value, error=str(exc))
