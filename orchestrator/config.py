"""Configuration management for the orchestration core.

This module provides centralized configuration loading from environment
variables. Each getter reads the environment when called, so tests can use
monkeypatch.setenv() without reloading modules.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    MAX_CONCURRENT_GENERATIONS: Parallel generation jobs (default: 3)
    GENERATION_MAX_ATTEMPTS: Attempts before a job fails (default: 3)
    GENERATION_RETRY_DELAY_SECONDS: Delay before a failed job is retried (default: 5)
    GENERATION_RETRY_BACKOFF: Multiplier applied per extra attempt (default: 1.0)
    GENERATION_PROCESSING_TIMEOUT_SECONDS: Hard deadline per attempt (default: 300)
    GENERATION_EXPECTED_DURATION_SECONDS: Progress estimate basis (default: 30)
    PIPELINE_CHECK_INTERVAL_SECONDS: Auto-trigger sweep interval (default: 5)
    PIPELINE_AUTO_TRIGGER: Enable auto-trigger sweep (default: true)
    PIPELINE_DEFAULT_STYLE: Script style when none requested (default: motivational)
    PIPELINE_DEFAULT_DURATION: Target duration in seconds (default: 60)
    SCRIPT_GENERATOR_URL: Base URL of the script generation service (optional)
    NOTIFICATION_WEBHOOK_URL: Webhook receiving pipeline events (optional)
    UPSTREAM_RATE_LIMIT_PER_MINUTE: Upstream request budget (default: 60)
    WORKER_ID: Identifier recorded on claimed jobs (default: worker-<pid>)

Usage:
    from orchestrator.config import get_database_url, get_max_concurrent_generations

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    max_concurrent = get_max_concurrent_generations()
"""

import os
from functools import lru_cache
from typing import get_args

import structlog

from orchestrator.schemas import ScriptStyle

log = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENT = 3
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_PROCESSING_TIMEOUT_SECONDS = 300.0  # 5 minutes
DEFAULT_EXPECTED_DURATION_SECONDS = 30.0
DEFAULT_CHECK_INTERVAL_SECONDS = 5.0
DEFAULT_STYLE = "motivational"
DEFAULT_TARGET_DURATION = 60
DEFAULT_RATE_LIMIT_PER_MINUTE = 60


def _get_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer variable, clamped to [minimum, maximum].

    Invalid values log a warning and fall back to the default.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def _get_float(name: str, default: float, minimum: float, maximum: float) -> float:
    """Read a float variable, clamped to [minimum, maximum]."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_max_concurrent_generations() -> int:
    """Get the global concurrency cap for generation jobs (1-20, default 3).

    The script generation service is rate limited upstream, so every extra
    concurrent job mostly adds waiting time inside the rate limiter.
    """
    return _get_int("MAX_CONCURRENT_GENERATIONS", DEFAULT_MAX_CONCURRENT, 1, 20)


def get_max_attempts() -> int:
    """Get attempts allowed per job before it is marked failed (1-10, default 3)."""
    return _get_int("GENERATION_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, 1, 10)


def get_retry_delay_seconds() -> float:
    """Get delay before a failed job becomes claimable again (0-3600s, default 5)."""
    return _get_float("GENERATION_RETRY_DELAY_SECONDS", DEFAULT_RETRY_DELAY_SECONDS, 0.0, 3600.0)


def get_retry_backoff() -> float:
    """Get the retry delay multiplier per additional attempt (1.0 = fixed delay)."""
    return _get_float("GENERATION_RETRY_BACKOFF", 1.0, 1.0, 10.0)


def get_processing_timeout_seconds() -> float:
    """Get the hard deadline of one generation attempt (1-3600s, default 300)."""
    return _get_float(
        "GENERATION_PROCESSING_TIMEOUT_SECONDS",
        DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        1.0,
        3600.0,
    )


def get_expected_duration_seconds() -> float:
    """Get the expected generation duration used for progress estimates."""
    return _get_float(
        "GENERATION_EXPECTED_DURATION_SECONDS",
        DEFAULT_EXPECTED_DURATION_SECONDS,
        1.0,
        3600.0,
    )


def get_check_interval_seconds() -> float:
    """Get the auto-trigger sweep interval in seconds (1-600, default 5)."""
    return _get_float("PIPELINE_CHECK_INTERVAL_SECONDS", DEFAULT_CHECK_INTERVAL_SECONDS, 1.0, 600.0)


def get_auto_trigger() -> bool:
    """Get whether the controller sweeps for selected posts automatically."""
    return os.getenv("PIPELINE_AUTO_TRIGGER", "true").strip().lower() in {"1", "true", "yes", "on"}


def get_default_style() -> str:
    """Get the script style used when a trigger does not request one.

    Unknown styles log a warning and fall back to the default.
    """
    raw = os.getenv("PIPELINE_DEFAULT_STYLE")
    if raw is None or raw == "":
        return DEFAULT_STYLE
    style = raw.strip().lower()
    if style not in get_args(ScriptStyle):
        log.warning(
            "invalid_config_value",
            name="PIPELINE_DEFAULT_STYLE",
            value=raw,
            using_default=DEFAULT_STYLE,
        )
        return DEFAULT_STYLE
    return style


def get_default_target_duration() -> int:
    """Get the target script duration in seconds (15-600, default 60)."""
    return _get_int("PIPELINE_DEFAULT_DURATION", DEFAULT_TARGET_DURATION, 15, 600)


def get_script_generator_url() -> str | None:
    """Get the script generation service base URL.

    Returns:
        URL string, or None if not set. The worker refuses to start without
        it because it has no generator to run jobs with.
    """
    return os.getenv("SCRIPT_GENERATOR_URL")


def get_notification_webhook_url() -> str | None:
    """Get the webhook URL that receives pipeline events.

    Returns:
        URL string, or None if not set (events stay in-process).
    """
    return os.getenv("NOTIFICATION_WEBHOOK_URL")


def get_upstream_rate_limit_per_minute() -> int:
    """Get the upstream request budget per minute (1-6000, default 60)."""
    return _get_int("UPSTREAM_RATE_LIMIT_PER_MINUTE", DEFAULT_RATE_LIMIT_PER_MINUTE, 1, 6000)


def get_worker_id() -> str:
    """Get the identifier recorded on jobs claimed by this process."""
    return os.getenv("WORKER_ID") or f"worker-{os.getpid()}"
