"""Turning submitted script sources into files the test tool can load."""

from __future__ import annotations

import ast
import re
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import structlog

from e2e_engine.models import TestScript
from e2e_engine.validation import Validator, parse_script

logger = structlog.get_logger(__name__)


_ENTRY_POINTS = ("run", "main")
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")

EMPTY_SCRIPT_ERROR = "Script is empty"
NO_SCRIPTS_ERROR = "No valid test scripts found to execute for this job."


@dataclass(frozen=True)
class PreparedScript:
    script: TestScript
    path: Path | None
    valid: bool
    error: str | None = None

    @property
    def filename(self) -> str | None:
        return self.path.name if self.path is not None else None


def defines_entry_point(source: str) -> bool:
    try:
        tree = parse_script(source)
    except (SyntaxError, ValueError):
        return False
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name in _ENTRY_POINTS:
            return True
    return False


def wrap_script(source: str, *, title: str | None = None) -> str:
    """Wrap a bare script body into ``async def run(page, base_url, artifacts_dir)``.

    Scripts that already define ``run`` or ``main`` are written as-is.
    """
    header = f"# {title}\n" if title else ""
    if defines_entry_point(source):
        return header + source.rstrip() + "\n"
    body = textwrap.indent(source.strip("\n"), "    ") if source.strip() else "    pass"
    return (
        header
        + "async def run(page, base_url, artifacts_dir):\n"
        + body.rstrip()
        + "\n"
    )


def failing_placeholder(message: str, *, title: str | None = None) -> str:
    """A script that loads fine and fails immediately with ``message``."""
    header = f"# {title}\n" if title else ""
    return (
        header
        + "async def run(page, base_url, artifacts_dir):\n"
        + f"    raise AssertionError({message!r})\n"
    )


def safe_filename(stem: str, *, prefix: str = "", suffix: str = ".py") -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", str(stem or "")).strip("._") or "script"
    return f"{prefix}{cleaned}{suffix}"


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def write_test_script(work_dir: Path, script: TestScript) -> Path:
    path = Path(work_dir) / safe_filename(script.id, prefix="test_")
    _write(path, wrap_script(script.script, title=script.display_name))
    logger.debug("Test script written", test_id=script.id, path=str(path))
    return path


def write_failing_test_script(work_dir: Path, script: TestScript, error: str) -> Path:
    path = Path(work_dir) / safe_filename(script.id, prefix="test_")
    return _write(path, failing_placeholder(error, title=script.display_name))


def prepare_job_scripts(
    job_dir: Path,
    scripts: Sequence[TestScript],
    *,
    validator: Validator | None = None,
) -> list[PreparedScript]:
    """Write one file per job script, in submission order.

    Empty scripts are skipped (they still get an entry, without a path). Scripts
    that fail validation are replaced by a failing placeholder so the tool
    reports them alongside the others.
    """
    prepared: list[PreparedScript] = []
    used: set[str] = set()
    for script in scripts:
        if not str(script.script or "").strip():
            logger.warning("Skipping empty job script", test_id=script.id)
            prepared.append(PreparedScript(script=script, path=None, valid=False, error=EMPTY_SCRIPT_ERROR))
            continue

        filename = safe_filename(script.id)
        n = 2
        while filename in used:
            filename = safe_filename(f"{script.id}_{n}")
            n += 1
        used.add(filename)
        path = Path(job_dir) / filename

        outcome = validator.validate(script.script) if validator is not None else None
        if outcome is not None and not outcome.valid:
            error = outcome.error or "Script validation failed"
            _write(path, failing_placeholder(f"Validation failed: {error}", title=script.display_name))
            prepared.append(PreparedScript(script=script, path=path, valid=False, error=error))
            continue

        _write(path, wrap_script(script.script, title=script.display_name))
        prepared.append(PreparedScript(script=script, path=path, valid=True))

    logger.info(
        "Job scripts prepared",
        job_dir=str(job_dir),
        written=sum(1 for p in prepared if p.path is not None),
        total=len(prepared),
    )
    return prepared


def write_no_scripts_placeholder(job_dir: Path) -> Path:
    return _write(Path(job_dir) / "no_scripts.py", failing_placeholder(NO_SCRIPTS_ERROR))
