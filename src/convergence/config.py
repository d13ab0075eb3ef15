"""Configuration management with validation.

Wait defaults are enforced at configuration load time so that a bad
environment fails at startup rather than in the middle of a wait.
Provider-wide values (credential, subscription, default tags) travel as
an explicit ProviderContext, never as module-level state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800  # 30 minutes per create/update/delete
MIN_OPERATION_TIMEOUT_SECONDS = 1
MAX_OPERATION_TIMEOUT_SECONDS = 24 * 3600

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_BACKOFF_FACTOR = 1.5
DEFAULT_JITTER = 0.1

# Reads tolerated as absent right after a create, before the record is indexed
DEFAULT_NOT_FOUND_CHECKS = 20
DEFAULT_MIN_CONSECUTIVE_TARGET = 1
MAX_NOT_FOUND_CHECKS = 1000

MAX_PROFILE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max wait profile file

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Timeouts per operation
    create_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    update_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    delete_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Polling cadence
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_interval_seconds: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    jitter: float = DEFAULT_JITTER

    # Flake tolerance
    not_found_checks: int = DEFAULT_NOT_FOUND_CHECKS
    min_consecutive_target: int = DEFAULT_MIN_CONSECUTIVE_TARGET

    # Per-resource-type overrides
    profiles_path: Path | None = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        for name in ("create_timeout_seconds", "update_timeout_seconds", "delete_timeout_seconds"):
            value = getattr(self, name)
            if not (MIN_OPERATION_TIMEOUT_SECONDS <= value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                    f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if self.poll_interval_seconds <= 0:
            errors.append("poll_interval_seconds must be positive")
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("max_poll_interval_seconds must be >= poll_interval_seconds")
        if self.backoff_factor < 1.0:
            errors.append("backoff_factor must be >= 1.0")
        if not (0.0 <= self.jitter <= 1.0):
            errors.append("jitter must be between 0.0 and 1.0")

        if not (0 <= self.not_found_checks <= MAX_NOT_FOUND_CHECKS):
            errors.append(f"not_found_checks must be between 0 and {MAX_NOT_FOUND_CHECKS}")
        if self.min_consecutive_target < 1:
            errors.append("min_consecutive_target must be at least 1")

        if self.profiles_path is not None and not self.profiles_path.exists():
            errors.append(f"Wait profiles file does not exist: {self.profiles_path}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"log_level must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            WAIT_CREATE_TIMEOUT: Create wait timeout in seconds (default: 1800)
            WAIT_UPDATE_TIMEOUT: Update wait timeout in seconds (default: 1800)
            WAIT_DELETE_TIMEOUT: Delete wait timeout in seconds (default: 1800)
            WAIT_POLL_INTERVAL: Initial seconds between polls (default: 5)
            WAIT_MAX_POLL_INTERVAL: Cap for backed-off poll interval (default: 30)
            WAIT_BACKOFF_FACTOR: Interval multiplier after each poll (default: 1.5)
            WAIT_JITTER: Random extra delay as a fraction of the interval (default: 0.1)
            WAIT_NOT_FOUND_CHECKS: Consecutive not-found reads tolerated (default: 20)
            WAIT_MIN_CONSECUTIVE_TARGET: Target observations required (default: 1)
            WAIT_PROFILES_PATH: YAML file with per-resource-type overrides
            LOG_LEVEL: Logging level (default: INFO)
            LOG_JSON: If "false", emit plain text logs (default: true)
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

        profiles = os.environ.get("WAIT_PROFILES_PATH")

        return cls(
            create_timeout_seconds=get_float(
                "WAIT_CREATE_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            update_timeout_seconds=get_float(
                "WAIT_UPDATE_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            delete_timeout_seconds=get_float(
                "WAIT_DELETE_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            poll_interval_seconds=get_float("WAIT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_interval_seconds=get_float(
                "WAIT_MAX_POLL_INTERVAL", DEFAULT_MAX_POLL_INTERVAL_SECONDS
            ),
            backoff_factor=get_float("WAIT_BACKOFF_FACTOR", DEFAULT_BACKOFF_FACTOR),
            jitter=get_float("WAIT_JITTER", DEFAULT_JITTER),
            not_found_checks=get_int("WAIT_NOT_FOUND_CHECKS", DEFAULT_NOT_FOUND_CHECKS),
            min_consecutive_target=get_int(
                "WAIT_MIN_CONSECUTIVE_TARGET", DEFAULT_MIN_CONSECUTIVE_TARGET
            ),
            profiles_path=Path(profiles) if profiles else None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_json=get_bool("LOG_JSON", True),
        )

    def timeout_for(self, operation: str) -> float:
        """Get the wait timeout for ``create``, ``update`` or ``delete``."""
        match operation:
            case "create":
                return self.create_timeout_seconds
            case "update":
                return self.update_timeout_seconds
            case "delete":
                return self.delete_timeout_seconds
            case _:
                raise ValueError(f"Unknown operation: {operation}")


@dataclass(frozen=True)
class ProviderContext:
    """Provider-wide values threaded through every reconciler call.

    Attributes:
        subscription_id: Target subscription for ARM-backed resources.
        credential: Azure token credential (or any transport credential).
        client_id: Client ID of the user-assigned managed identity, if any.
        default_tags: Tags merged under every resource's own tags.
    """

    subscription_id: str | None = None
    credential: Any | None = None
    client_id: str | None = None
    default_tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> ProviderContext:
        """Load context from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription
            AZURE_CLIENT_ID: User-assigned managed identity client ID
            DEFAULT_TAGS: Comma-separated key=value pairs

        The credential itself is not built here; the ARM transport obtains
        a managed identity credential when the context carries none.
        """
        tags: dict[str, str] = {}
        raw_tags = os.environ.get("DEFAULT_TAGS", "")
        for pair in raw_tags.split(","):
            pair = pair.strip()
            if not pair:
                continue
            key, sep, value = pair.partition("=")
            if not sep or not key.strip():
                raise ConfigurationError(f"DEFAULT_TAGS entries must be key=value: {pair}")
            tags[key.strip()] = value.strip()

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            default_tags=tags,
        )

    def merged_tags(self, tags: dict[str, str] | None) -> dict[str, str]:
        """Merge resource tags over the default tags."""
        merged = dict(self.default_tags)
        if tags:
            merged.update(tags)
        return merged
