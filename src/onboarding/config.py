"""Runtime configuration with validation.

Tenant/subscription targeting and retry budgets come from environment
variables. Invalid configurations raise ConfigurationError before any
Azure call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .retry import RetryPolicy, is_transient, is_transient_or_permission


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SPEC_PATH = "onboarding.yaml"

DEFAULT_PROVIDER_POLL_INTERVAL_SECONDS = 10
DEFAULT_PROVIDER_MAX_RETRIES = 20

DEFAULT_RESOURCE_MAX_ATTEMPTS = 5
DEFAULT_RESOURCE_BACKOFF_SECONDS = 10

DEFAULT_RBAC_MAX_ATTEMPTS = 10
DEFAULT_RBAC_BACKOFF_SECONDS = 10

DEFAULT_SECRET_WRITE_MAX_ATTEMPTS = 10
DEFAULT_SECRET_WRITE_BACKOFF_SECONDS = 15

MAX_ATTEMPTS_LIMIT = 60
MAX_BACKOFF_SECONDS = 300

LOG_FORMATS = ("json", "text")

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Config:
    """Onboarding runtime configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run, when
    some resources would already exist.
    """

    # Required fields
    subscription_id: str
    tenant_id: str

    # Paths
    spec_path: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_PATH))
    output_path: Path | None = None

    # Provider registration polling
    provider_poll_interval_seconds: float = DEFAULT_PROVIDER_POLL_INTERVAL_SECONDS
    provider_max_retries: int = DEFAULT_PROVIDER_MAX_RETRIES

    # Retry budgets
    resource_max_attempts: int = DEFAULT_RESOURCE_MAX_ATTEMPTS
    resource_backoff_seconds: float = DEFAULT_RESOURCE_BACKOFF_SECONDS
    rbac_max_attempts: int = DEFAULT_RBAC_MAX_ATTEMPTS
    rbac_backoff_seconds: float = DEFAULT_RBAC_BACKOFF_SECONDS
    secret_write_max_attempts: int = DEFAULT_SECRET_WRITE_MAX_ATTEMPTS
    secret_write_backoff_seconds: float = DEFAULT_SECRET_WRITE_BACKOFF_SECONDS

    # Logging
    log_format: str = "json"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.tenant_id:
            errors.append("AZURE_TENANT_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if self.provider_max_retries < 1:
            errors.append("PROVIDER_MAX_RETRIES must be at least 1")
        if self.provider_poll_interval_seconds < 0:
            errors.append("PROVIDER_POLL_INTERVAL cannot be negative")

        for env_name, attempts in (
            ("RESOURCE_MAX_ATTEMPTS", self.resource_max_attempts),
            ("RBAC_MAX_ATTEMPTS", self.rbac_max_attempts),
            ("SECRET_WRITE_MAX_ATTEMPTS", self.secret_write_max_attempts),
        ):
            if not 1 <= attempts <= MAX_ATTEMPTS_LIMIT:
                errors.append(f"{env_name} must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        for env_name, backoff in (
            ("RESOURCE_RETRY_BACKOFF", self.resource_backoff_seconds),
            ("RBAC_RETRY_BACKOFF", self.rbac_backoff_seconds),
            ("SECRET_WRITE_BACKOFF", self.secret_write_backoff_seconds),
        ):
            if not 0 <= backoff <= MAX_BACKOFF_SECONDS:
                errors.append(f"{env_name} must be between 0 and {MAX_BACKOFF_SECONDS} seconds")

        if self.log_format not in LOG_FORMATS:
            errors.append(f"LOG_FORMAT must be one of {list(LOG_FORMATS)}: {self.log_format}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def resource_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.resource_max_attempts,
            backoff_seconds=self.resource_backoff_seconds,
            retryable=is_transient,
        )

    @property
    def rbac_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.rbac_max_attempts,
            backoff_seconds=self.rbac_backoff_seconds,
            retryable=is_transient,
        )

    @property
    def secret_write_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.secret_write_max_attempts,
            backoff_seconds=self.secret_write_backoff_seconds,
            retryable=is_transient_or_permission,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription (GUID)
            AZURE_TENANT_ID: Customer tenant (GUID)
            ONBOARDING_SPEC: Path to the onboarding YAML (default: onboarding.yaml)
            ONBOARDING_OUTPUT: Path for the JSON record (default: stdout)
            PROVIDER_POLL_INTERVAL: Seconds between provider polls (default: 10)
            PROVIDER_MAX_RETRIES: Provider polls before timing out (default: 20)
            RESOURCE_MAX_ATTEMPTS / RESOURCE_RETRY_BACKOFF: Resource ensure retry (5 / 10s)
            RBAC_MAX_ATTEMPTS / RBAC_RETRY_BACKOFF: Role binding retry (10 / 10s)
            SECRET_WRITE_MAX_ATTEMPTS / SECRET_WRITE_BACKOFF: Vault write retry (10 / 15s)
            LOG_FORMAT: "json" or "text" (default: json)
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

        output = os.environ.get("ONBOARDING_OUTPUT")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            tenant_id=os.environ.get("AZURE_TENANT_ID", ""),
            spec_path=Path(os.environ.get("ONBOARDING_SPEC", DEFAULT_SPEC_PATH)),
            output_path=Path(output) if output else None,
            provider_poll_interval_seconds=get_float(
                "PROVIDER_POLL_INTERVAL", DEFAULT_PROVIDER_POLL_INTERVAL_SECONDS
            ),
            provider_max_retries=get_int("PROVIDER_MAX_RETRIES", DEFAULT_PROVIDER_MAX_RETRIES),
            resource_max_attempts=get_int("RESOURCE_MAX_ATTEMPTS", DEFAULT_RESOURCE_MAX_ATTEMPTS),
            resource_backoff_seconds=get_float(
                "RESOURCE_RETRY_BACKOFF", DEFAULT_RESOURCE_BACKOFF_SECONDS
            ),
            rbac_max_attempts=get_int("RBAC_MAX_ATTEMPTS", DEFAULT_RBAC_MAX_ATTEMPTS),
            rbac_backoff_seconds=get_float("RBAC_RETRY_BACKOFF", DEFAULT_RBAC_BACKOFF_SECONDS),
            secret_write_max_attempts=get_int(
                "SECRET_WRITE_MAX_ATTEMPTS", DEFAULT_SECRET_WRITE_MAX_ATTEMPTS
            ),
            secret_write_backoff_seconds=get_float(
                "SECRET_WRITE_BACKOFF", DEFAULT_SECRET_WRITE_BACKOFF_SECONDS
            ),
            log_format=os.environ.get("LOG_FORMAT", "json").lower(),
        )
