"""
Configuration for the Metrics Aggregation Pipeline.

All settings are read from environment variables exactly once (at cold start
for Lambda, at process start for the poller) and validated immediately so that
a misconfigured deployment fails fast instead of mid-batch.
"""

import os
from dataclasses import dataclass
from typing import Optional


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def _int_var(name: str, default: str, minimum: int = 0, maximum: Optional[int] = None) -> int:
    raw = get_env_var(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"FATAL: Environment variable '{name}' must be an integer, got '{raw}'.") from None
    if value < minimum or (maximum is not None and value > maximum):
        raise ValueError(f"FATAL: Environment variable '{name}'={value} is out of range.")
    return value


def _float_var(name: str, default: str) -> float:
    raw = get_env_var(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"FATAL: Environment variable '{name}' must be a number, got '{raw}'.") from None
    if value < 0:
        raise ValueError(f"FATAL: Environment variable '{name}' must not be negative.")
    return value


@dataclass(frozen=True)
class Settings:
    """Validated runtime settings. See `load_settings` for the variable names."""

    metrics_table: str
    dedup_table: str
    queue_url: str
    dead_letter_queue_url: str = ""
    environment: str = "dev"
    log_level: str = "INFO"
    service_name: str = "metrics-aggregator"
    metrics_namespace: str = "EmailMetricsPipeline"
    claim_ttl_seconds: int = 60
    dedup_retention_hours: int = 24
    max_conflict_retries: int = 5
    retry_base_delay_ms: int = 50
    retry_max_elapsed_seconds: float = 5.0
    max_workers: int = 8
    batch_size: int = 10
    wait_time_seconds: int = 20
    visibility_timeout_seconds: int = 60
    claim_recheck_attempts: int = 2
    claim_recheck_delay_ms: int = 200
    contention_defer_seconds: int = 60
    max_receive_count: int = 5
    max_bounce_rate: float = 0.05
    max_complaint_rate: float = 0.001


def load_settings() -> Settings:
    """
    Builds a Settings object from the process environment.

    Raises:
        ValueError: If a required variable is missing or a value is invalid.
    """
    claim_ttl = _int_var("CLAIM_TTL_SECONDS", "60", minimum=1)
    return Settings(
        metrics_table=get_env_var("METRICS_TABLE"),
        dedup_table=get_env_var("DEDUP_TABLE"),
        queue_url=get_env_var("QUEUE_URL"),
        dead_letter_queue_url=get_env_var("DEAD_LETTER_QUEUE_URL", ""),
        environment=get_env_var("ENVIRONMENT", "dev"),
        log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
        service_name=get_env_var("POWERTOOLS_SERVICE_NAME", "metrics-aggregator"),
        metrics_namespace=get_env_var("POWERTOOLS_METRICS_NAMESPACE", "EmailMetricsPipeline"),
        claim_ttl_seconds=claim_ttl,
        dedup_retention_hours=_int_var("DEDUP_RETENTION_HOURS", "24", minimum=1),
        max_conflict_retries=_int_var("MAX_CONFLICT_RETRIES", "5", minimum=1),
        retry_base_delay_ms=_int_var("RETRY_BASE_DELAY_MS", "50"),
        retry_max_elapsed_seconds=_float_var("RETRY_MAX_ELAPSED_SECONDS", "5"),
        max_workers=_int_var("MAX_WORKERS", "8", minimum=1),
        # SQS limits: at most 10 messages per receive, at most 20s long poll.
        batch_size=_int_var("BATCH_SIZE", "10", minimum=1, maximum=10),
        wait_time_seconds=_int_var("WAIT_TIME_SECONDS", "20", maximum=20),
        visibility_timeout_seconds=_int_var("VISIBILITY_TIMEOUT_SECONDS", "60", maximum=43200),
        claim_recheck_attempts=_int_var("CLAIM_RECHECK_ATTEMPTS", "2"),
        claim_recheck_delay_ms=_int_var("CLAIM_RECHECK_DELAY_MS", "200"),
        contention_defer_seconds=_int_var("CONTENTION_DEFER_SECONDS", str(claim_ttl), maximum=43200),
        max_receive_count=_int_var("MAX_RECEIVE_COUNT", "5", minimum=1),
        max_bounce_rate=_float_var("MAX_BOUNCE_RATE", "0.05"),
        max_complaint_rate=_float_var("MAX_COMPLAINT_RATE", "0.001"),
    )
