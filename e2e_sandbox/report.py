from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape


RESULT_PREFIX = "E2E_RESULT_JSON="
REPORT_FILENAME = "index.html"


@dataclass(frozen=True)
class FileResult:
    file: str
    status: str  # pass|fail|infra_degraded
    elapsed_ms: float | None = None
    error_kind: str | None = None
    error_message: str | None = None
    final_url: str | None = None
    title: str | None = None
    artifacts: dict[str, str] = field(default_factory=dict)
    browser_infra_error: bool = False

    @property
    def passed(self) -> bool:
        return self.status == "pass"

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "status": self.status,
            "elapsed_ms": self.elapsed_ms,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "final_url": self.final_url,
            "title": self.title,
            "artifacts": dict(self.artifacts),
            "browser_infra_error": self.browser_infra_error,
        }


def list_line(result: FileResult) -> str:
    """One line per file, e.g. ``  ✓ login.py (812ms)`` or ``  ✘ cart.py failed: ...``."""
    if result.passed:
        ms = f" ({result.elapsed_ms:.0f}ms)" if result.elapsed_ms is not None else ""
        return f"  ✓ {result.file}{ms}"
    detail = result.error_message or result.error_kind or "unknown error"
    detail = " ".join(str(detail).split())
    return f"  ✘ {result.file} failed: {detail}"


def summary_line(results: Sequence[FileResult]) -> str:
    passed = sum(1 for r in results if r.passed)
    return f"{passed} passed, {len(results) - passed} failed"


def overall_status(results: Sequence[FileResult]) -> str:
    if results and all(r.passed for r in results):
        return "pass"
    if any(r.status == "infra_degraded" for r in results):
        return "infra_degraded"
    return "fail"


def result_payload(results: Sequence[FileResult], *, elapsed_ms: float | None = None) -> dict[str, Any]:
    passed = sum(1 for r in results if r.passed)
    return {
        "status": overall_status(results),
        "passed": passed,
        "failed": len(results) - passed,
        "elapsed_ms": elapsed_ms,
        "files": [r.to_dict() for r in results],
    }


def result_line(results: Sequence[FileResult], *, elapsed_ms: float | None = None) -> str:
    return RESULT_PREFIX + json.dumps(result_payload(results, elapsed_ms=elapsed_ms), ensure_ascii=False, sort_keys=True)


def _jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
        autoescape=select_autoescape(["html"]),
    )


def render_report(
    results: Sequence[FileResult],
    *,
    base_url: str,
    elapsed_ms: float | None = None,
    execution_id: str | None = None,
) -> str:
    return _jinja_env().get_template("report.html").render(
        results=list(results),
        summary=summary_line(results),
        status=overall_status(results),
        base_url=base_url,
        elapsed_ms=elapsed_ms,
        execution_id=execution_id,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def write_report(report_dir: Path, html: str) -> Path:
    path = Path(report_dir) / REPORT_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8", errors="replace")
    return path
