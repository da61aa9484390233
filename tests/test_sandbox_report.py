from __future__ import annotations

import json

from e2e_sandbox.browser import is_browser_infra_error
from e2e_sandbox.report import RESULT_PREFIX, FileResult, list_line, render_report, result_line, result_payload, summary_line


class _DummyPlaywrightError(Exception):
    pass


class TargetClosedError(Exception):
    pass


def _results() -> list[FileResult]:
    return [
        FileResult(file="login.py", status="pass", elapsed_ms=812.4),
        FileResult(file="cart.py", status="fail", error_kind="AssertionError", error_message="no\n  checkout <button>"),
    ]


def test_list_lines() -> None:
    ok, bad = _results()
    assert list_line(ok) == "  ✓ login.py (812ms)"
    assert list_line(bad) == "  ✘ cart.py failed: no checkout <button>"
    assert list_line(FileResult(file="x.py", status="fail")) == "  ✘ x.py failed: unknown error"


def test_summary_and_payload() -> None:
    results = _results()
    assert summary_line(results) == "1 passed, 1 failed"
    payload = result_payload(results, elapsed_ms=1000.0)
    assert payload["status"] == "fail"
    assert payload["passed"] == 1
    assert [f["file"] for f in payload["files"]] == ["login.py", "cart.py"]
    assert result_payload([])["status"] == "fail"
    assert result_payload([FileResult(file="a.py", status="infra_degraded")])["status"] == "infra_degraded"


def test_result_line_is_parseable() -> None:
    line = result_line(_results())
    assert line.startswith(RESULT_PREFIX)
    assert json.loads(line[len(RESULT_PREFIX):])["failed"] == 1


def test_render_report_escapes_error_text() -> None:
    html = render_report(_results(), base_url="https://example.test", execution_id="t1")
    assert "1 passed, 1 failed" in html
    assert "login.py" in html
    assert "&lt;button&gt;" in html
    assert "<button>" not in html


def test_is_browser_infra_error_page_crashed() -> None:
    assert is_browser_infra_error(_DummyPlaywrightError("Error: Page.goto: Page crashed")) is True


def test_is_browser_infra_error_target_closed() -> None:
    assert is_browser_infra_error(TargetClosedError("whatever")) is True


def test_is_browser_infra_error_driver_connection_closed() -> None:
    assert (
        is_browser_infra_error(
            _DummyPlaywrightError("Exception: Browser.new_context: Connection closed while reading from the driver")
        )
        is True
    )


def test_assertion_is_not_infra() -> None:
    assert is_browser_infra_error(AssertionError("title mismatch")) is False
