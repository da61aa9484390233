from __future__ import annotations

import argparse
import asyncio
import importlib.util
import json
import os
import sys
import time
import traceback
from pathlib import Path
from typing import Any, Callable

from playwright.async_api import Browser, async_playwright

from e2e_sandbox.browser import is_browser_infra_error, launch_chromium
from e2e_sandbox.report import FileResult, list_line, render_report, result_line, summary_line, write_report


DATA_DIRNAME = "data"


def _safe_str(x: Any, *, max_len: int = 2000) -> str:
    s = str(x or "")
    return s if len(s) <= max_len else s[:max_len]


def _write_text(path: Path, content: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8", errors="replace")
    except OSError:
        pass


async def _route_filter(context) -> None:
    # Reduce bandwidth/CPU for monitoring-style tests.
    async def _handler(route):
        if route.request.resource_type in {"image", "media", "font"}:
            await route.abort()
            return
        await route.continue_()

    try:
        await context.route("**/*", _handler)
    except Exception:
        pass


def _load_module_from_path(path: Path):
    p = path.resolve()
    name = f"submitted_e2e_{abs(hash(str(p)))}"
    spec = importlib.util.spec_from_file_location(name, str(p))
    if spec is None or spec.loader is None:
        raise RuntimeError("could_not_load_test_module")
    mod = importlib.util.module_from_spec(spec)
    sys.modules[name] = mod
    spec.loader.exec_module(mod)
    return mod


def _pick_entry(mod) -> Callable[..., Any]:
    fn = getattr(mod, "run", None)
    if callable(fn):
        return fn
    fn = getattr(mod, "main", None)
    if callable(fn):
        return fn
    raise RuntimeError("test_file_must_define_run_or_main")


async def _run_one(
    browser: Browser,
    *,
    test_file: Path,
    base_url: str,
    report_dir: Path,
    timeout_seconds: float,
    trace_on_failure: bool,
) -> FileResult:
    started = time.perf_counter()
    artifacts: dict[str, str] = {}
    timeout_ms = int(max(1.0, float(timeout_seconds)) * 1000.0)
    rel_dir = f"{DATA_DIRNAME}/{test_file.stem}"
    artifacts_dir = report_dir / rel_dir
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    context = await browser.new_context(viewport={"width": 1280, "height": 720})
    await _route_filter(context)
    page = await context.new_page()
    page.set_default_timeout(timeout_ms)
    tracing_started = False
    if trace_on_failure:
        try:
            await context.tracing.start(screenshots=True, snapshots=True, sources=False)
            tracing_started = True
        except Exception:
            tracing_started = False

    try:
        mod = _load_module_from_path(test_file)
        entry = _pick_entry(mod)
        # Preferred contract: `async def run(page, base_url, artifacts_dir): ...`
        # Fallback: `def main(base_url, artifacts_dir): ...`
        if getattr(mod, "run", None) is entry:
            res = entry(page, base_url, str(artifacts_dir))
        else:
            res = entry(base_url, str(artifacts_dir))
        if asyncio.iscoroutine(res):
            await res

        title = None
        try:
            title = _safe_str(await page.title(), max_len=500)
        except Exception:
            title = None
        if tracing_started:
            try:
                await context.tracing.stop()
            except Exception:
                pass
        return FileResult(
            file=test_file.name,
            status="pass",
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
            final_url=_safe_str(getattr(page, "url", None)) or None,
            title=title,
            artifacts=artifacts,
        )
    except Exception as exc:
        infra = is_browser_infra_error(exc)
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        final_url = None
        title = None
        try:
            final_url = _safe_str(getattr(page, "url", None)) or None
            title = _safe_str(await page.title(), max_len=500)
        except Exception:
            pass

        # Best-effort failure artifacts.
        try:
            await page.screenshot(path=str(artifacts_dir / "failure.png"), full_page=True)
            artifacts["failure_screenshot"] = f"{rel_dir}/failure.png"
        except Exception:
            pass
        if tracing_started:
            try:
                await context.tracing.stop(path=str(artifacts_dir / "trace.zip"))
                artifacts["trace_zip"] = f"{rel_dir}/trace.zip"
            except Exception:
                pass

        status = "infra_degraded" if infra else "fail"
        _write_text(
            artifacts_dir / "run.log",
            json.dumps(
                {
                    "file": test_file.name,
                    "status": status,
                    "error_kind": type(exc).__name__,
                    "error_message": _safe_str(exc),
                    "final_url": final_url,
                    "title": title,
                    "browser_infra_error": infra,
                    "traceback": _safe_str(traceback.format_exc(), max_len=50_000),
                },
                ensure_ascii=False,
                sort_keys=True,
                indent=2,
            ),
        )
        artifacts.setdefault("run_log", f"{rel_dir}/run.log")
        return FileResult(
            file=test_file.name,
            status=status,
            elapsed_ms=elapsed_ms,
            error_kind=type(exc).__name__,
            error_message=_safe_str(exc),
            final_url=final_url,
            title=title,
            artifacts=artifacts,
            browser_infra_error=infra,
        )
    finally:
        try:
            await page.close()
        except Exception:
            pass
        try:
            await context.close()
        except Exception:
            pass


def _launch_failure(test_file: Path, exc: Exception) -> FileResult:
    return FileResult(
        file=test_file.name,
        status="infra_degraded",
        error_kind=type(exc).__name__,
        error_message=f"browser could not be launched: {_safe_str(exc)}",
        browser_infra_error=True,
    )


async def run_files(
    test_files: list[Path],
    *,
    base_url: str,
    report_dir: Path,
    timeout_seconds: float,
    trace_on_failure: bool = False,
) -> list[FileResult]:
    results: list[FileResult] = []
    async with async_playwright() as p:
        try:
            browser = await launch_chromium(p)
        except Exception as exc:
            for f in test_files:
                results.append(_launch_failure(f, exc))
                print(list_line(results[-1]), flush=True)
            return results
        try:
            for f in test_files:
                if not f.is_file():
                    r = FileResult(file=f.name, status="fail", error_kind="FileNotFoundError", error_message=f"missing_file: {f}")
                else:
                    r = await _run_one(
                        browser,
                        test_file=f,
                        base_url=base_url,
                        report_dir=report_dir,
                        timeout_seconds=timeout_seconds,
                        trace_on_failure=trace_on_failure,
                    )
                results.append(r)
                print(list_line(r), flush=True)
        finally:
            try:
                await browser.close()
            except Exception:
                pass
    return results


async def _amain(argv: list[str]) -> int:
    ap = argparse.ArgumentParser(description="Run submitted Playwright Python test files.")
    ap.add_argument("files", nargs="+", help="Test files, run in order")
    ap.add_argument("--report-dir", default=os.getenv("E2E_REPORT_DIR") or "playwright-report")
    ap.add_argument("--base-url", default=os.getenv("BASE_URL") or "")
    ap.add_argument("--timeout-seconds", type=float, default=float(os.getenv("E2E_TEST_TIMEOUT_SECONDS") or 45.0))
    ap.add_argument("--trace-on-failure", action="store_true")
    args = ap.parse_args(argv)

    report_dir = Path(args.report_dir).resolve()
    report_dir.mkdir(parents=True, exist_ok=True)
    test_files = [Path(f).resolve() for f in args.files]
    base_url = str(args.base_url).strip()

    started = time.perf_counter()
    print(f"Running {len(test_files)} test file(s)", flush=True)
    results = await run_files(
        test_files,
        base_url=base_url,
        report_dir=report_dir,
        timeout_seconds=float(args.timeout_seconds),
        trace_on_failure=bool(args.trace_on_failure),
    )
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)

    try:
        write_report(
            report_dir,
            render_report(results, base_url=base_url, elapsed_ms=elapsed_ms, execution_id=os.getenv("E2E_EXECUTION_ID")),
        )
    except Exception as exc:
        sys.stderr.write(f"could not write HTML report: {exc}\n")

    print("", flush=True)
    print(f"  {summary_line(results)}", flush=True)
    # Machine-readable output for the engine.
    sys.stdout.write(result_line(results, elapsed_ms=elapsed_ms) + "\n")
    sys.stdout.flush()
    return 0 if results and all(r.passed for r in results) else 1


def main() -> None:
    # Ensure predictable HOME for Playwright temp files inside read-only sandboxes.
    os.environ.setdefault("HOME", "/tmp")
    try:
        rc = asyncio.run(_amain(sys.argv[1:]))
    except KeyboardInterrupt:
        rc = 130
    sys.exit(int(rc))


if __name__ == "__main__":
    main()
