from __future__ import annotations

import sys
from pathlib import Path

import pytest

from e2e_engine.config import EngineConfig, PoolConfig, TimeoutConfig


# Stand-in for the browser tool. Behaviour is driven by markers inside each
# script file, e.g. a script containing "FAKE:fail" is reported as failed.
FAKE_TOOL = r'''
import json
import os
import sys
import time
from pathlib import Path


def _marker_value(src, key):
    token = f"FAKE:{key}="
    if token not in src:
        return None
    return src.split(token, 1)[1].split()[0].strip("\"'")


report_dir = Path(os.environ["E2E_REPORT_DIR"])
report_dir.mkdir(parents=True, exist_ok=True)
sources = [(Path(f).name, Path(f).read_text(encoding="utf-8")) for f in sys.argv[1:]]
everything = "\n".join(src for _, src in sources)

pid_file = _marker_value(everything, "pidfile")
if pid_file:
    Path(pid_file).write_text(str(os.getpid()), encoding="utf-8")

sleep_for = _marker_value(everything, "sleep")
if sleep_for:
    time.sleep(float(sleep_for))

noisy = _marker_value(everything, "noisy")
if noisy:
    for i in range(int(noisy)):
        print(f"noise line {i}", flush=True)

if "FAKE:trace" in everything:
    sys.stderr.write("Error: ENOENT: no such file or directory, open '/results/traces/abc.trace'\n")
    sys.exit(1)

print(f"Running {len(sources)} test file(s)", flush=True)
results = []
for name, src in sources:
    if "FAKE:fail" in src or "raise AssertionError" in src:
        print(f"  ✘ {name} failed: assertion", flush=True)
        results.append({"file": name, "status": "fail", "error_message": "assertion"})
    else:
        print(f"  ✓ {name} (5ms)", flush=True)
        results.append({"file": name, "status": "pass", "error_message": None})

passed = sum(1 for r in results if r["status"] == "pass")
print("", flush=True)
print(f"  {passed} passed, {len(results) - passed} failed", flush=True)
if "FAKE:structured" in everything:
    print("E2E_RESULT_JSON=" + json.dumps({"files": results}), flush=True)

if "FAKE:noreport" not in everything:
    (report_dir / "index.html").write_text("<html><body>fake tool report</body></html>", encoding="utf-8")

exit_code = _marker_value(everything, "exit")
if exit_code is not None:
    sys.stderr.write("forced exit\n")
    sys.exit(int(exit_code))
sys.exit(0 if passed == len(results) else 1)
'''


@pytest.fixture
def fake_tool(tmp_path: Path) -> Path:
    path = tmp_path / "fake_tool.py"
    path.write_text(FAKE_TOOL, encoding="utf-8")
    return path


@pytest.fixture
def tool_command(fake_tool: Path) -> list[str]:
    return [sys.executable, str(fake_tool)]


@pytest.fixture
def engine_config(tmp_path: Path, tool_command: list[str]) -> EngineConfig:
    return EngineConfig(
        results_dir=str(tmp_path / "results"),
        work_dir=str(tmp_path / "work"),
        runner_command=tool_command,
        pool=PoolConfig(max_concurrent_tests=2),
        timeouts=TimeoutConfig(
            test_execution_timeout_ms=20_000,
            job_execution_timeout_ms=20_000,
            kill_grace_seconds=1.0,
        ),
    )


def script(marker: str = "") -> str:
    """A valid script body carrying an optional fake-tool marker."""
    return f'await page.goto(base_url)\nstep = "FAKE:{marker}"\n' if marker else "await page.goto(base_url)\n"
