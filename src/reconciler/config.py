"""Configuration management with validation.

All timing bounds are validated at load time so a misconfigured engine
fails at startup rather than mid-transition.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SITE = "default"

DEFAULT_POLL_INTERVAL_SECONDS = 3
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

# Consecutive "not found" reads tolerated while a device flickers in and out
DEFAULT_NOT_FOUND_GRACE = 30
# Consecutive "not found" reads that confirm a forgotten device is gone
DEFAULT_FORGET_ABSENCE_GRACE = 3
MAX_NOT_FOUND_GRACE = 100

DEFAULT_ADOPT_TIMEOUT_SECONDS = 120
DEFAULT_UPDATE_TIMEOUT_SECONDS = 60
DEFAULT_FORGET_TIMEOUT_SECONDS = 60
MAX_WAIT_TIMEOUT_SECONDS = 3600

DEFAULT_MUTATE_RETRY_BUDGET_SECONDS = 60
DEFAULT_RETRY_BACKOFF_SECONDS = 2

DEFAULT_HARNESS_STARTUP_TIMEOUT_SECONDS = 300
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

MAX_POLICIES_FILE_SIZE_BYTES = 64 * 1024  # 64KB max policies file

# Input validation patterns
VALID_URL_PATTERN = r"^https?://[^\s/$.?#][^\s]*$"
VALID_SITE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$"


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Controller endpoint
    controller_url: str
    site: str = DEFAULT_SITE
    api_key: str | None = None
    insecure: bool = False
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Polling
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    not_found_grace: int = DEFAULT_NOT_FOUND_GRACE
    forget_absence_grace: int = DEFAULT_FORGET_ABSENCE_GRACE

    # Per-operation wait budgets
    adopt_timeout_seconds: int = DEFAULT_ADOPT_TIMEOUT_SECONDS
    update_timeout_seconds: int = DEFAULT_UPDATE_TIMEOUT_SECONDS
    forget_timeout_seconds: int = DEFAULT_FORGET_TIMEOUT_SECONDS

    # Mutate-phase retry
    mutate_retry_budget_seconds: int = DEFAULT_MUTATE_RETRY_BUDGET_SECONDS
    retry_backoff_seconds: int = DEFAULT_RETRY_BACKOFF_SECONDS

    # Test harness
    harness_startup_timeout_seconds: int = DEFAULT_HARNESS_STARTUP_TIMEOUT_SECONDS

    # Optional YAML with per-operation overrides
    policies_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.controller_url:
            errors.append("UNIFI_API is required")
        elif not re.match(VALID_URL_PATTERN, self.controller_url):
            errors.append(f"UNIFI_API must be an http(s) URL: {self.controller_url}")

        if not re.match(VALID_SITE_PATTERN, self.site):
            errors.append(f"UNIFI_SITE must match pattern {VALID_SITE_PATTERN}: {self.site}")

        # Timing validation
        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (0 <= self.not_found_grace <= MAX_NOT_FOUND_GRACE):
            errors.append(f"NOT_FOUND_GRACE must be between 0 and {MAX_NOT_FOUND_GRACE}")
        if not (0 <= self.forget_absence_grace <= MAX_NOT_FOUND_GRACE):
            errors.append(f"FORGET_ABSENCE_GRACE must be between 0 and {MAX_NOT_FOUND_GRACE}")
        elif (
            max(self.forget_absence_grace, 1) * self.poll_interval_seconds
            >= self.forget_timeout_seconds
        ):
            errors.append(
                "FORGET_ABSENCE_GRACE x POLL_INTERVAL must be less than FORGET_TIMEOUT"
            )

        for name, value in (
            ("ADOPT_TIMEOUT", self.adopt_timeout_seconds),
            ("UPDATE_TIMEOUT", self.update_timeout_seconds),
            ("FORGET_TIMEOUT", self.forget_timeout_seconds),
            ("HARNESS_STARTUP_TIMEOUT", self.harness_startup_timeout_seconds),
        ):
            if not (self.poll_interval_seconds < value <= MAX_WAIT_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be greater than POLL_INTERVAL and at most "
                    f"{MAX_WAIT_TIMEOUT_SECONDS} seconds"
                )

        if self.mutate_retry_budget_seconds < 0:
            errors.append("MUTATE_RETRY_BUDGET cannot be negative")
        if self.retry_backoff_seconds < 0:
            errors.append("RETRY_BACKOFF cannot be negative")
        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")

        if self.policies_file is not None and not self.policies_file.exists():
            errors.append(f"Policies file does not exist: {self.policies_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            UNIFI_API: Controller base URL (required)
            UNIFI_SITE: Default site name (default: default)
            UNIFI_API_KEY: API key sent as X-API-KEY (optional)
            UNIFI_INSECURE: If "true", skip TLS verification (default: false)
            REQUEST_TIMEOUT: Per-request timeout in seconds (default: 30)
            POLL_INTERVAL: Seconds between state probes (default: 3)
            NOT_FOUND_GRACE: Tolerated consecutive not-found probes (default: 30)
            FORGET_ABSENCE_GRACE: Not-found probes confirming a forget (default: 3)
            ADOPT_TIMEOUT: Wait budget after adopt in seconds (default: 120)
            UPDATE_TIMEOUT: Wait budget after update in seconds (default: 60)
            FORGET_TIMEOUT: Wait budget after forget in seconds (default: 60)
            MUTATE_RETRY_BUDGET: Retry budget for busy errors in seconds (default: 60)
            RETRY_BACKOFF: Fixed delay between mutate retries in seconds (default: 2)
            HARNESS_STARTUP_TIMEOUT: Controller readiness budget in seconds (default: 300)
            POLICIES_FILE: Optional YAML with per-operation overrides
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        policies_file = os.environ.get("POLICIES_FILE")

        return cls(
            controller_url=os.environ.get("UNIFI_API", "").rstrip("/"),
            site=os.environ.get("UNIFI_SITE", DEFAULT_SITE),
            api_key=os.environ.get("UNIFI_API_KEY") or None,
            insecure=get_bool("UNIFI_INSECURE", False),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            not_found_grace=get_int("NOT_FOUND_GRACE", DEFAULT_NOT_FOUND_GRACE),
            forget_absence_grace=get_int(
                "FORGET_ABSENCE_GRACE", DEFAULT_FORGET_ABSENCE_GRACE
            ),
            adopt_timeout_seconds=get_int("ADOPT_TIMEOUT", DEFAULT_ADOPT_TIMEOUT_SECONDS),
            update_timeout_seconds=get_int("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
            forget_timeout_seconds=get_int("FORGET_TIMEOUT", DEFAULT_FORGET_TIMEOUT_SECONDS),
            mutate_retry_budget_seconds=get_int(
                "MUTATE_RETRY_BUDGET", DEFAULT_MUTATE_RETRY_BUDGET_SECONDS
            ),
            retry_backoff_seconds=get_int("RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF_SECONDS),
            harness_startup_timeout_seconds=get_int(
                "HARNESS_STARTUP_TIMEOUT", DEFAULT_HARNESS_STARTUP_TIMEOUT_SECONDS
            ),
            policies_file=Path(policies_file) if policies_file else None,
        )
