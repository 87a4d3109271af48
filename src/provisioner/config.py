"""Configuration management with validation.

Every setting is validated at construction time so that a bad environment
fails before the first provider call rather than halfway through an apply.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MAX_MAX_CONCURRENCY = 32

DEFAULT_MAX_RETRIES = 3
MAX_MAX_RETRIES = 10
RETRY_BACKOFF_BASE_SECONDS = 5.0
RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
MAX_OPERATION_TIMEOUT_SECONDS = 4 * 3600

# Input size limits
MAX_STACK_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack file
MAX_STATE_FILE_SIZE_BYTES = 50 * 1024 * 1024  # 50MB max state file
MAX_RESOURCES_PER_STACK = 800  # ARM limit per deployment, reused as a sanity bound
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

DEFAULT_STACK_FILE = "stack.yaml"
DEFAULT_STATE_FILE = ".azp/state.json"

# Input validation patterns
VALID_RESOURCE_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,127}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number: {value}") from e


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class DeploymentSettings:
    """Values shared by every declaration in a stack.

    The Azure subscription, default region and resource group are passed
    explicitly to the graph builder instead of living in module globals.
    Declarations read them through ``${config.<key>}`` references.

    Attributes:
        subscription_id: Target Azure subscription.
        location: Default Azure region.
        resource_group_name: Default resource group for resource-group
            scoped kinds.
        variables: Free-form stack variables (repo URL, budget email, ...).
    """

    subscription_id: str = ""
    location: str = ""
    resource_group_name: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if (
            self.resource_group_name
            and len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH
        ):
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if errors:
            raise ConfigurationError(
                "Deployment settings validation failed:\n  - " + "\n  - ".join(errors)
            )

    def lookup(self, key: str) -> tuple[bool, Any]:
        """Look up a value addressable as ``${config.<key>}``.

        Built-in settings take precedence over stack variables.

        Returns:
            Tuple of (found, value).
        """
        builtins: dict[str, Any] = {
            "subscriptionId": self.subscription_id,
            "location": self.location,
            "resourceGroupName": self.resource_group_name,
        }
        if key in builtins and builtins[key]:
            return True, builtins[key]
        if key in self.variables:
            return True, self.variables[key]
        return False, None

    def with_variables(self, variables: dict[str, Any]) -> DeploymentSettings:
        """Return a copy with extra stack variables merged in."""
        merged = dict(self.variables)
        merged.update(variables)
        return DeploymentSettings(
            subscription_id=self.subscription_id,
            location=self.location,
            resource_group_name=self.resource_group_name,
            variables=merged,
        )

    @classmethod
    def from_env(cls) -> DeploymentSettings:
        """Load deployment settings from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Default region for declarations
            RESOURCE_GROUP_NAME: Default resource group
        """
        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME") or None,
        )


@dataclass(frozen=True)
class ExecutorConfig:
    """Bounds for plan execution.

    Attributes:
        max_concurrency: Maximum provider operations in flight at once.
        max_retries: Attempts per operation for transient provider errors.
        retry_backoff_base_seconds: First backoff delay; doubles per attempt.
        retry_backoff_max_seconds: Ceiling for a single backoff delay.
        operation_timeout_seconds: Maximum wait for one long-running operation.
    """

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not (1 <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_MAX_CONCURRENCY}")

        if not (1 <= self.max_retries <= MAX_MAX_RETRIES):
            errors.append(f"MAX_RETRIES must be between 1 and {MAX_MAX_RETRIES}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS")

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"OPERATION_TIMEOUT_SECONDS must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS}"
            )

        if errors:
            raise ConfigurationError(
                "Executor configuration validation failed:\n  - " + "\n  - ".join(errors)
            )

    @classmethod
    def from_env(cls) -> ExecutorConfig:
        """Load executor bounds from environment variables.

        Environment Variables:
            MAX_CONCURRENCY: Parallel provider operations (default: 4)
            MAX_RETRIES: Attempts for transient errors (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Initial backoff (default: 5)
            RETRY_BACKOFF_MAX_SECONDS: Backoff ceiling (default: 60)
            OPERATION_TIMEOUT_SECONDS: Per-operation timeout (default: 1800)
        """
        return cls(
            max_concurrency=_get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_retries=_get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base_seconds=_get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=_get_float(
                "RETRY_BACKOFF_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=_get_int(
                "OPERATION_TIMEOUT_SECONDS", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
        )


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    stack_file: Path = field(default_factory=lambda: Path(DEFAULT_STACK_FILE))
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    settings: DeploymentSettings = field(default_factory=DeploymentSettings)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.stack_file.exists():
            errors.append(f"Stack file does not exist: {self.stack_file}")

        if self.state_file.exists() and self.state_file.is_dir():
            errors.append(f"State file path is a directory: {self.state_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STACK_FILE: Path to the YAML stack (default: stack.yaml)
            STATE_FILE: Path to the JSON state snapshot (default: .azp/state.json)
            DRY_RUN: If "true", only plan without applying (default: false)

        See DeploymentSettings.from_env and ExecutorConfig.from_env for the
        remaining variables.
        """
        return cls(
            stack_file=Path(os.environ.get("STACK_FILE", DEFAULT_STACK_FILE)),
            state_file=Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            settings=DeploymentSettings.from_env(),
            executor=ExecutorConfig.from_env(),
            dry_run=_get_bool("DRY_RUN", False),
        )
