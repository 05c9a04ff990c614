"""Configuration management for the orchestration engine.

This module provides centralized configuration loading from environment variables.
Getters read the environment on every call unless marked @lru_cache, so tests
can monkeypatch variables without reloading the module.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    CAPABILITY_BASE_URL: Base URL of the generation capability gateway
    CAPABILITY_API_KEY: Bearer token for the gateway (optional)
    CAPABILITY_TIMEOUT_SECONDS: Per-call timeout (default: 120)
    CAPABILITY_MAX_RATE: Capability calls per second (default: 5)
    MANUAL_CAPABILITIES: Task capabilities routed to humans (default: infra,qa,human_review)
    STEP_LEASE_TTL_SECONDS: Job lease TTL (default: 600)
    MAX_PARALLEL_TASKS: Ready tasks dispatched per step (default: 1)
    SCHEDULER_INTERVAL_SECONDS: Scheduler polling cadence (default: 2)
    MAX_CONCURRENT_JOBS: Jobs stepped concurrently by the scheduler (default: 4)
    CAPTIONS_ENABLED_DEFAULT: Captions for video jobs without an explicit option (default: true)
    LOG_LEVEL: Log level name (default: INFO)

Usage:
    from app.config import get_capability_base_url, get_database_url

    base_url = get_capability_base_url()  # Returns None if not set
    db_url = get_database_url()  # Raises if DATABASE_URL not set
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)


DEFAULT_CAPABILITY_TIMEOUT_SECONDS = 120
DEFAULT_CAPABILITY_MAX_RATE = 5
DEFAULT_MANUAL_CAPABILITIES = ("infra", "qa", "human_review")
DEFAULT_STEP_LEASE_TTL_SECONDS = 600
DEFAULT_MAX_PARALLEL_TASKS = 1
DEFAULT_SCHEDULER_INTERVAL_SECONDS = 2
DEFAULT_MAX_CONCURRENT_JOBS = 4


def _get_clamped_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer variable, clamped to [minimum, maximum].

    Invalid values log a warning and fall back to the default.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning(
            "invalid_config_value",
            variable=name,
            value=raw,
            using_default=default,
        )
        return default
    return max(minimum, min(maximum, value))


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_capability_base_url() -> str | None:
    """Get the generation capability gateway URL from environment.

    Environment Variable:
        CAPABILITY_BASE_URL: e.g. "https://capabilities.internal"

    Returns:
        Base URL without trailing slash, or None if not set.

    Note:
        Returns None when unset so the API can start without a gateway.
        Jobs will then fail at their first automated capability call, and
        tests inject in-process capabilities instead.
    """
    url = os.getenv("CAPABILITY_BASE_URL")
    if not url:
        return None
    return url.rstrip("/")


def get_capability_api_key() -> str | None:
    """Get the bearer token sent to the capability gateway, if any."""
    return os.getenv("CAPABILITY_API_KEY") or None


def get_capability_timeout_seconds() -> int:
    """Get per-call capability timeout in seconds.

    Environment Variable:
        CAPABILITY_TIMEOUT_SECONDS: Timeout (default: 120)

    Returns:
        Timeout in seconds (minimum 10, maximum 900).

    Note:
        Video rendering calls are the slowest capability; 900 seconds is the
        ceiling so a single step can never hang indefinitely.
    """
    return _get_clamped_int(
        "CAPABILITY_TIMEOUT_SECONDS", DEFAULT_CAPABILITY_TIMEOUT_SECONDS, 10, 900
    )


def get_capability_max_rate() -> int:
    """Get the maximum number of capability calls per second (1-100)."""
    return _get_clamped_int("CAPABILITY_MAX_RATE", DEFAULT_CAPABILITY_MAX_RATE, 1, 100)


def get_manual_capabilities() -> list[str]:
    """Get task capabilities that are routed to a human instead of automated.

    Environment Variable:
        MANUAL_CAPABILITIES: Comma-separated capability names
        Example: "infra,qa,human_review"

    Returns:
        List of lowercase capability names. An empty value means every
        capability is automated.
    """
    raw = os.getenv("MANUAL_CAPABILITIES")
    if raw is None:
        return list(DEFAULT_MANUAL_CAPABILITIES)
    return [name.strip().lower() for name in raw.split(",") if name.strip()]


def get_step_lease_ttl_seconds() -> int:
    """Get the job lease TTL in seconds.

    Environment Variable:
        STEP_LEASE_TTL_SECONDS: Lease lifetime (default: 600)

    Returns:
        TTL in seconds (minimum 5, maximum 3600).

    Note:
        Must exceed the capability client's worst-case call time (timeout x
        attempts + backoff). The API and the scheduler refuse to start otherwise.
    """
    return _get_clamped_int(
        "STEP_LEASE_TTL_SECONDS", DEFAULT_STEP_LEASE_TTL_SECONDS, 5, 3600
    )


def get_max_parallel_tasks() -> int:
    """Get how many independent ready tasks a single step may dispatch (1-16)."""
    return _get_clamped_int("MAX_PARALLEL_TASKS", DEFAULT_MAX_PARALLEL_TASKS, 1, 16)


def get_scheduler_interval_seconds() -> int:
    """Get the scheduler polling interval in seconds (1-60)."""
    return _get_clamped_int(
        "SCHEDULER_INTERVAL_SECONDS", DEFAULT_SCHEDULER_INTERVAL_SECONDS, 1, 60
    )


def get_max_concurrent_jobs() -> int:
    """Get how many jobs the scheduler steps concurrently (1-64)."""
    return _get_clamped_int("MAX_CONCURRENT_JOBS", DEFAULT_MAX_CONCURRENT_JOBS, 1, 64)


def get_captions_enabled_default() -> bool:
    """Get whether video jobs get captions when the request does not say.

    Environment Variable:
        CAPTIONS_ENABLED_DEFAULT: "true"/"false" (default: true)
    """
    return os.getenv("CAPTIONS_ENABLED_DEFAULT", "true").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }


def get_log_level() -> str:
    """Get the log level name (default: INFO)."""
    return os.getenv("LOG_LEVEL", "INFO").upper()
