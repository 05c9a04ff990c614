"""Structured Logging Configuration.

This module configures structlog for JSON output and context binding.
Outputs JSON format for production log aggregation (CloudWatch, Datadog, Splunk).

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (job IDs, task IDs, shot IDs, etc.)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL (from LOG_LEVEL)

Usage:
    from app.utils.logging import configure_logging, get_logger

    configure_logging()  # once, at process start
    log = get_logger(__name__)
    log.info("step_completed", job_id=str(job.id), stage="generating_media")
"""

import logging
import sys
from typing import Any

import structlog

from app.config import get_log_level

_configured = False


def configure_logging(level: str | None = None, json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; only the first call takes effect unless
    the level is passed explicitly.

    Args:
        level: Log level name. Defaults to LOG_LEVEL.
        json_output: Render JSON lines (production) or console output (local dev).
    """
    global _configured
    if _configured and level is None:
        return

    level_name = (level or get_log_level()).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
        force=True,
    )

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    """Get a structured logger bound to the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        structlog logger with `logger=name` bound
    """
    return structlog.get_logger(name).bind(logger=name)
