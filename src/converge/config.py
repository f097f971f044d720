"""Engine configuration with validation.

Bounds are enforced at construction time so a misconfigured engine fails
before it touches any provider.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_PARALLELISM = 10
MIN_PARALLELISM = 1
MAX_PARALLELISM = 64

DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_CEILING = 10
RETRY_BACKOFF_BASE_SECONDS = 5.0
RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_WAIT_TIMEOUT_SECONDS = 1800.0  # Certificate validation can be slow
MAX_WAIT_TIMEOUT_SECONDS = 4 * 3600.0
WAIT_POLL_INTERVAL_SECONDS = 5.0
WAIT_POLL_MAX_INTERVAL_SECONDS = 60.0

DEFAULT_STATE_PATH = "converge.state.json"

# Declarations larger than this are rejected before parsing
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for provider errors marked retryable."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry following ``attempt`` (1-based), without jitter."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


@dataclass(frozen=True)
class WaitPolicy:
    """Polling behaviour for wait conditions."""

    timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS
    poll_interval_seconds: float = WAIT_POLL_INTERVAL_SECONDS
    poll_max_interval_seconds: float = WAIT_POLL_MAX_INTERVAL_SECONDS


@dataclass(frozen=True)
class EngineConfig:
    """Apply engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Maximum provider operations in flight within one wave
    parallelism: int = DEFAULT_PARALLELISM

    # Read every recorded resource before planning to surface drift
    refresh_before_apply: bool = False

    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    wait: WaitPolicy = field(default_factory=WaitPolicy)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM):
            errors.append(
                f"parallelism must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}: "
                f"{self.parallelism}"
            )

        if not (1 <= self.retry.max_attempts <= MAX_ATTEMPTS_CEILING):
            errors.append(
                f"max_attempts must be between 1 and {MAX_ATTEMPTS_CEILING}: "
                f"{self.retry.max_attempts}"
            )
        if self.retry.backoff_base_seconds < 0:
            errors.append("retry backoff base cannot be negative")
        if self.retry.backoff_max_seconds < self.retry.backoff_base_seconds:
            errors.append("retry backoff max must be >= retry backoff base")

        if not (0 < self.wait.timeout_seconds <= MAX_WAIT_TIMEOUT_SECONDS):
            errors.append(
                f"wait timeout must be positive and at most {MAX_WAIT_TIMEOUT_SECONDS:.0f}s"
            )
        if self.wait.poll_interval_seconds <= 0:
            errors.append("wait poll interval must be positive")
        if self.wait.poll_max_interval_seconds < self.wait.poll_interval_seconds:
            errors.append("wait poll max interval must be >= wait poll interval")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_PARALLELISM: Max concurrent operations per wave (default: 10)
            CONVERGE_MAX_ATTEMPTS: Attempts for retryable provider errors (default: 3)
            CONVERGE_RETRY_BACKOFF_BASE: Retry backoff base in seconds (default: 5)
            CONVERGE_RETRY_BACKOFF_MAX: Retry backoff cap in seconds (default: 60)
            CONVERGE_WAIT_TIMEOUT: Default wait condition timeout in seconds (default: 1800)
            CONVERGE_WAIT_INTERVAL: Initial wait poll interval in seconds (default: 5)
            CONVERGE_WAIT_MAX_INTERVAL: Wait poll interval cap in seconds (default: 60)
            CONVERGE_REFRESH: If "true", read resources before planning (default: false)
            CONVERGE_STATE_PATH: State file location (default: converge.state.json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            parallelism=get_int("CONVERGE_PARALLELISM", DEFAULT_PARALLELISM),
            refresh_before_apply=get_bool("CONVERGE_REFRESH", False),
            state_path=Path(os.environ.get("CONVERGE_STATE_PATH", DEFAULT_STATE_PATH)),
            retry=RetryPolicy(
                max_attempts=get_int("CONVERGE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                backoff_base_seconds=get_float(
                    "CONVERGE_RETRY_BACKOFF_BASE", RETRY_BACKOFF_BASE_SECONDS
                ),
                backoff_max_seconds=get_float(
                    "CONVERGE_RETRY_BACKOFF_MAX", RETRY_BACKOFF_MAX_SECONDS
                ),
            ),
            wait=WaitPolicy(
                timeout_seconds=get_float("CONVERGE_WAIT_TIMEOUT", DEFAULT_WAIT_TIMEOUT_SECONDS),
                poll_interval_seconds=get_float(
                    "CONVERGE_WAIT_INTERVAL", WAIT_POLL_INTERVAL_SECONDS
                ),
                poll_max_interval_seconds=get_float(
                    "CONVERGE_WAIT_MAX_INTERVAL", WAIT_POLL_MAX_INTERVAL_SECONDS
                ),
            ),
        )
