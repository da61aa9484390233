"""Configuration management for the execution engine."""

import os
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field


def _default_runner_command() -> list[str]:
    return [sys.executable, "-m", "e2e_sandbox.playwright_python"]


class PoolConfig(BaseModel):
    """Worker pool sizing."""
    max_concurrent_tests: int = Field(default=2, ge=1, le=64, description="Concurrent single-script executions")
    max_concurrent_jobs: Optional[int] = Field(
        default=None, ge=1, le=64, description="Concurrent multi-script jobs (defaults to half the test pool)"
    )

    @property
    def job_pool_size(self) -> int:
        if self.max_concurrent_jobs is not None:
            return self.max_concurrent_jobs
        return max(1, self.max_concurrent_tests // 2)


class TimeoutConfig(BaseModel):
    """Wall-clock budgets in milliseconds."""
    test_execution_timeout_ms: int = Field(default=15 * 60 * 1000, ge=100, description="Hard timeout per single-script run")
    job_execution_timeout_ms: int = Field(default=15 * 60 * 1000, ge=100, description="Hard timeout per job run")
    kill_grace_seconds: float = Field(default=5.0, ge=0.0, description="SIGTERM to SIGKILL grace period")

    @property
    def test_timeout_seconds(self) -> float:
        return self.test_execution_timeout_ms / 1000.0

    @property
    def job_timeout_seconds(self) -> float:
        return self.job_execution_timeout_ms / 1000.0


class RetentionConfig(BaseModel):
    """Status retention and duplicate tracking."""
    status_retention_seconds: float = Field(default=3600.0, ge=0.0, description="Keep completed statuses this long")
    sweep_interval_seconds: float = Field(default=300.0, gt=0.0, description="Interval of the status sweep")
    duplicate_max_tracked: int = Field(default=100, ge=1, description="Job ids remembered by the duplicate guard")
    duplicate_window_seconds: float = Field(default=3600.0, gt=0.0, description="Duplicate tracking window")


class EngineConfig(BaseModel):
    """Main configuration for the execution engine."""

    # Environment settings
    environment: str = Field(default="production", description="Deployment environment")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")

    # Filesystem layout
    results_dir: str = Field(default="test-results", description="Root of per-execution report directories")
    work_dir: str = Field(default="test-runs", description="Root of materialized script files")
    report_url_prefix: str = Field(default="/api/test-results", description="Prefix of public report URLs")

    # Child process
    runner_command: list[str] = Field(default_factory=_default_runner_command, description="Tool invoked per execution")
    base_url: str = Field(default="", description="BASE_URL handed to scripts")
    max_output_chunks: int = Field(default=500, ge=1, description="Output chunks kept per stream")
    env_passthrough: list[str] = Field(
        default_factory=lambda: [
            "PATH", "LANG", "TZ", "HOME", "CHROMIUM_PATH",
            "HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "http_proxy", "https_proxy", "no_proxy",
        ],
        description="Environment variables inherited by child processes",
    )
    env_passthrough_prefixes: list[str] = Field(
        default_factory=lambda: ["LC_", "PLAYWRIGHT_"],
        description="Environment variable prefixes inherited by child processes",
    )

    # Collaborators
    artifact_store_url: Optional[str] = Field(default=None, description="HTTP artifact store base URL")
    artifact_store_dir: Optional[str] = Field(default=None, description="Local artifact store root")
    artifact_store_token: str = Field(default="", description="Bearer token for the HTTP artifact store")
    metadata_db_path: Optional[str] = Field(default=None, description="SQLite path for report metadata")

    pool: PoolConfig = Field(default_factory=PoolConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)

    def results_path(self) -> Path:
        return Path(self.results_dir).resolve()

    def work_path(self) -> Path:
        return Path(self.work_dir).resolve()


def _int_or_none(raw: str) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """Load configuration from file or environment variables."""
    if config_path is None:
        config_path = os.getenv("E2E_ENGINE_CONFIG", "config/engine.yaml")

    config_data: dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    env_overrides = {
        "environment": os.getenv("E2E_ENGINE_ENV"),
        "log_level": os.getenv("E2E_ENGINE_LOG_LEVEL") or os.getenv("LOG_LEVEL"),
        "results_dir": os.getenv("E2E_RESULTS_DIR"),
        "work_dir": os.getenv("E2E_WORK_DIR"),
        "base_url": os.getenv("E2E_BASE_URL"),
        "artifact_store_url": os.getenv("E2E_ARTIFACT_STORE_URL"),
        "artifact_store_dir": os.getenv("E2E_ARTIFACT_STORE_DIR"),
        "artifact_store_token": os.getenv("E2E_ARTIFACT_STORE_TOKEN"),
        "metadata_db_path": os.getenv("E2E_METADATA_DB_PATH"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            config_data[key] = value

    # Nested integer overrides; unparsable values keep the file/default value.
    nested_overrides = {
        ("pool", "max_concurrent_tests"): os.getenv("MAX_CONCURRENT_TESTS"),
        ("pool", "max_concurrent_jobs"): os.getenv("MAX_CONCURRENT_JOBS"),
        ("timeouts", "test_execution_timeout_ms"): os.getenv("TEST_EXECUTION_TIMEOUT_MS"),
        ("timeouts", "job_execution_timeout_ms"): os.getenv("JOB_EXECUTION_TIMEOUT_MS"),
    }
    for (section, key), raw in nested_overrides.items():
        if raw is None:
            continue
        value = _int_or_none(raw)
        if value is None:
            continue
        config_data.setdefault(section, {})[key] = value

    return EngineConfig(**config_data)


def get_config() -> EngineConfig:
    """Get a freshly loaded configuration instance."""
    return load_config()
