from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from e2e_engine.config import load_config
from e2e_engine.engine import ExecutionEngine
from e2e_engine.log import configure_logging
from e2e_engine.models import TestScript

logger = structlog.get_logger(__name__)


async def _run_test(engine: ExecutionEngine, path: Path, timeout: float | None) -> dict:
    handle = await engine.submit_test(path.read_text(encoding="utf-8"), name=path.name)
    result = await engine.await_result(handle, timeout)
    return result.to_dict()


async def _run_job(engine: ExecutionEngine, job_id: str, paths: list[Path], timeout: float | None) -> dict:
    scripts = [TestScript(id=p.stem, script=p.read_text(encoding="utf-8"), name=p.name) for p in paths]
    handle = await engine.submit_job(job_id, scripts)
    result = await engine.await_result(handle, timeout)
    return result.to_dict()


async def _amain(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    # stdout carries the JSON result; logs go to stderr.
    configure_logging(args.log_level or cfg.log_level, json_output=cfg.log_json, stream=sys.stderr)
    if args.results_dir:
        cfg.results_dir = args.results_dir
    if args.base_url:
        cfg.base_url = args.base_url

    async with ExecutionEngine(cfg) as engine:
        if args.command == "run-test":
            payload = await _run_test(engine, Path(args.file), args.timeout)
        else:
            payload = await _run_job(engine, args.job_id, [Path(f) for f in args.files], args.timeout)

    logger.info("Execution finished", command=args.command, success=bool(payload.get("success")))
    if args.quiet:
        payload.pop("stdout", None)
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")
    return 0 if payload.get("success") else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run browser test scripts through the execution engine")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); defaults to the configured level",
    )
    parser.add_argument("--results-dir", default=None, help="Override the report root directory")
    parser.add_argument("--base-url", default=None, help="BASE_URL handed to the scripts")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the result")
    parser.add_argument("--quiet", action="store_true", help="Leave captured stdout out of the printed result")
    sub = parser.add_subparsers(dest="command", required=True)

    test = sub.add_parser("run-test", help="Run a single test script")
    test.add_argument("file")

    job = sub.add_parser("run-job", help="Run several scripts as one job")
    job.add_argument("--job-id", required=True)
    job.add_argument("files", nargs="+")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_amain(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
