"""Configuration management with validation.

Limits are enforced at configuration load time so a misconfigured run
fails before any phase touches the artifact store or a provider.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
ENV_PREFIX = "ORCHESTRATOR_"

DEFAULT_STATE_DIR = ".orchestrator"

# Global cap on concurrent node applies within a level (external rate limits)
GLOBAL_MAX_CONCURRENCY = 8

DEFAULT_RETRY_MAX_ATTEMPTS = 5
MAX_RETRY_ATTEMPTS = 20
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 60.0
DEFAULT_RETRY_JITTER_RATIO = 0.0

DEFAULT_HEALTH_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 300.0
MAX_HEALTH_TIMEOUT_SECONDS = 3600.0
DEFAULT_HEALTH_THRESHOLD = 80.0

# Security constraints - enforced limits to prevent abuse
MAX_GRAPH_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max graph document
MAX_RULESET_FILE_SIZE_BYTES = 256 * 1024
MAX_GRAPH_NODES = 2000

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_weights(value: str) -> dict[str, float]:
    """Parse ``category=weight`` pairs separated by commas.

    Raises:
        ConfigurationError: If a pair is malformed or a weight is not a number.
    """
    weights: dict[str, float] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ConfigurationError(f"Health weight must be category=weight: {item}")
        category, raw = item.split("=", 1)
        try:
            weights[category.strip()] = float(raw)
        except ValueError as e:
            raise ConfigurationError(f"Health weight must be a number: {item}") from e
    return weights


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Artifact store root
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Executor
    max_concurrency: int = GLOBAL_MAX_CONCURRENCY
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    retry_jitter_ratio: float = DEFAULT_RETRY_JITTER_RATIO

    # Health verifier
    health_poll_interval_seconds: float = DEFAULT_HEALTH_POLL_INTERVAL_SECONDS
    health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS
    health_threshold: float = DEFAULT_HEALTH_THRESHOLD
    health_weights: dict[str, float] = field(default_factory=dict)
    # None means every category is required (fail-closed scoring)
    required_categories: frozenset[str] | None = None

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not 1 <= self.max_concurrency <= GLOBAL_MAX_CONCURRENCY:
            errors.append(
                f"MAX_CONCURRENCY must be between 1 and {GLOBAL_MAX_CONCURRENCY}: "
                f"{self.max_concurrency}"
            )

        if not 1 <= self.retry_max_attempts <= MAX_RETRY_ATTEMPTS:
            errors.append(
                f"RETRY_MAX_ATTEMPTS must be between 1 and {MAX_RETRY_ATTEMPTS}: "
                f"{self.retry_max_attempts}"
            )

        if self.retry_base_delay_seconds < 0:
            errors.append("RETRY_BASE_DELAY must not be negative")

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            errors.append("RETRY_MAX_DELAY must be at least RETRY_BASE_DELAY")

        if not 0.0 <= self.retry_jitter_ratio <= 1.0:
            errors.append("RETRY_JITTER must be between 0 and 1")

        if self.health_poll_interval_seconds <= 0:
            errors.append("HEALTH_POLL_INTERVAL must be positive")

        if not 0 < self.health_timeout_seconds <= MAX_HEALTH_TIMEOUT_SECONDS:
            errors.append(
                f"HEALTH_TIMEOUT must be between 0 and {MAX_HEALTH_TIMEOUT_SECONDS} seconds"
            )

        if not 0.0 <= self.health_threshold <= 100.0:
            errors.append("HEALTH_THRESHOLD must be between 0 and 100")

        for category, weight in self.health_weights.items():
            if weight < 0:
                errors.append(f"Health weight for '{category}' must not be negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables (all prefixed with ORCHESTRATOR_):
            STATE_DIR: Artifact store root (default: .orchestrator)
            MAX_CONCURRENCY: Concurrent applies per level, 1-8 (default: 8)
            RETRY_MAX_ATTEMPTS: Attempts per node before giving up (default: 5)
            RETRY_BASE_DELAY: First backoff delay in seconds (default: 1)
            RETRY_MAX_DELAY: Backoff cap in seconds (default: 60)
            RETRY_JITTER: Jitter ratio added to each delay (default: 0)
            HEALTH_POLL_INTERVAL: Seconds between status polls (default: 5)
            HEALTH_TIMEOUT: Seconds before a node is Unreachable (default: 300)
            HEALTH_THRESHOLD: Minimum passing health score (default: 80)
            HEALTH_WEIGHTS: Category weights, e.g. "network=2,security=1"
            REQUIRED_CATEGORIES: Comma-separated required categories (default: all)
            LOG_LEVEL: Logging level (default: INFO)
            JSON_LOGS: Emit JSON log lines (default: true)
        """

        def env(key: str) -> str | None:
            return os.environ.get(ENV_PREFIX + key)

        def get_int(key: str, default: int) -> int:
            value = env(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{ENV_PREFIX}{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = env(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{ENV_PREFIX}{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = (env(key) or "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        required_raw = env("REQUIRED_CATEGORIES")
        required = (
            frozenset(item.strip() for item in required_raw.split(",") if item.strip())
            if required_raw
            else None
        )

        return cls(
            state_dir=Path(env("STATE_DIR") or DEFAULT_STATE_DIR),
            max_concurrency=get_int("MAX_CONCURRENCY", GLOBAL_MAX_CONCURRENCY),
            retry_max_attempts=get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            retry_base_delay_seconds=get_float(
                "RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            retry_max_delay_seconds=get_float("RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS),
            retry_jitter_ratio=get_float("RETRY_JITTER", DEFAULT_RETRY_JITTER_RATIO),
            health_poll_interval_seconds=get_float(
                "HEALTH_POLL_INTERVAL", DEFAULT_HEALTH_POLL_INTERVAL_SECONDS
            ),
            health_timeout_seconds=get_float("HEALTH_TIMEOUT", DEFAULT_HEALTH_TIMEOUT_SECONDS),
            health_threshold=get_float("HEALTH_THRESHOLD", DEFAULT_HEALTH_THRESHOLD),
            health_weights=parse_weights(env("HEALTH_WEIGHTS") or ""),
            required_categories=required,
            log_level=(env("LOG_LEVEL") or "INFO").upper(),
            json_logs=get_bool("JSON_LOGS", True),
        )
