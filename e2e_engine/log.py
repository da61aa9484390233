"""Structured logging setup."""

from __future__ import annotations

import logging
from typing import TextIO

import structlog


def configure_logging(level: str = "INFO", *, json_output: bool = False, stream: TextIO | None = None) -> None:
    level_no = getattr(logging, str(level or "INFO").strip().upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )
