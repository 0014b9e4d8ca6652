"""Configuration management with validation.

Bounds are enforced at configuration load time so that a misconfigured
control plane fails before issuing any provisioning call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Polling budget, matching the provisioning custom resources
DEFAULT_POLL_INTERVAL_SECONDS = 30
MIN_POLL_INTERVAL_SECONDS = 0
MAX_POLL_INTERVAL_SECONDS = 300

DEFAULT_MAX_POLL_ATTEMPTS = 30
MAX_POLL_ATTEMPTS_LIMIT = 1000

DEFAULT_REQUEST_DEADLINE_SECONDS = 1800
MAX_REQUEST_DEADLINE_SECONDS = 6 * 3600

DEFAULT_PLUGIN_DOWNLOAD_TIMEOUT_SECONDS = 120

# Input limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_RESOURCE_PREFIX_LENGTH = 32
MAX_TENANTS_PER_DEPLOYMENT = 100

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"
VALID_ACCOUNT_ID_PATTERN = r"^\d{12}$"
VALID_RESOURCE_PREFIX_PATTERN = r"^[a-z][a-z0-9_]*$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Control plane configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-request.
    """

    # Required fields
    region: str
    account_id: str

    partition: str = "aws"

    # Naming
    resource_prefix: str = "clickstream"
    stack_prefix: str = "Clickstream"

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS
    request_deadline_seconds: int = DEFAULT_REQUEST_DEADLINE_SECONDS
    plugin_download_timeout_seconds: int = DEFAULT_PLUGIN_DOWNLOAD_TIMEOUT_SECONDS

    # Persistence - empty means the in-memory store
    metadata_table: str = ""

    # Behavior
    drop_warehouse_on_delete: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid region name: {self.region}")

        if not self.account_id:
            errors.append("AWS_ACCOUNT_ID is required")
        elif not re.match(VALID_ACCOUNT_ID_PATTERN, self.account_id):
            errors.append(f"AWS_ACCOUNT_ID must be 12 digits: {self.account_id}")

        if not self.resource_prefix or len(self.resource_prefix) > MAX_RESOURCE_PREFIX_LENGTH:
            errors.append(
                f"RESOURCE_PREFIX must be 1-{MAX_RESOURCE_PREFIX_LENGTH} characters"
            )
        elif not re.match(VALID_RESOURCE_PREFIX_PATTERN, self.resource_prefix):
            errors.append(
                f"RESOURCE_PREFIX must match pattern {VALID_RESOURCE_PREFIX_PATTERN}: "
                f"{self.resource_prefix}"
            )

        if not self.stack_prefix:
            errors.append("STACK_PREFIX is required")

        if not (MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"POLL_INTERVAL_SECONDS must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS}"
            )

        if not (1 <= self.max_poll_attempts <= MAX_POLL_ATTEMPTS_LIMIT):
            errors.append(f"MAX_POLL_ATTEMPTS must be between 1 and {MAX_POLL_ATTEMPTS_LIMIT}")

        if not (1 <= self.request_deadline_seconds <= MAX_REQUEST_DEADLINE_SECONDS):
            errors.append(
                f"REQUEST_DEADLINE_SECONDS must be between 1 and {MAX_REQUEST_DEADLINE_SECONDS}"
            )

        if self.plugin_download_timeout_seconds < 1:
            errors.append("PLUGIN_DOWNLOAD_TIMEOUT must be at least 1 second")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Region hosting the provisioned resources
            AWS_ACCOUNT_ID: Account owning the BI assets
            AWS_PARTITION: ARN partition (default: aws)
            RESOURCE_PREFIX: Prefix for BI asset ids and folder members (default: clickstream)
            STACK_PREFIX: Prefix of templating stack names (default: Clickstream)
            POLL_INTERVAL_SECONDS: Sleep between status polls (default: 30)
            MAX_POLL_ATTEMPTS: Polls before an operation times out (default: 30)
            REQUEST_DEADLINE_SECONDS: Deadline for one lifecycle request (default: 1800)
            PLUGIN_DOWNLOAD_TIMEOUT: Connector plugin download timeout (default: 120)
            METADATA_TABLE: DynamoDB table for deployment records (default: in-memory)
            DROP_WAREHOUSE_ON_DELETE: Drop schemas/database on delete (default: false)
            LOG_LEVEL: Root log level (default: INFO)
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

        return cls(
            region=os.environ.get("AWS_REGION", ""),
            account_id=os.environ.get("AWS_ACCOUNT_ID", ""),
            partition=os.environ.get("AWS_PARTITION", "aws"),
            resource_prefix=os.environ.get("RESOURCE_PREFIX", "clickstream"),
            stack_prefix=os.environ.get("STACK_PREFIX", "Clickstream"),
            poll_interval_seconds=get_int("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_attempts=get_int("MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS),
            request_deadline_seconds=get_int(
                "REQUEST_DEADLINE_SECONDS", DEFAULT_REQUEST_DEADLINE_SECONDS
            ),
            plugin_download_timeout_seconds=get_int(
                "PLUGIN_DOWNLOAD_TIMEOUT", DEFAULT_PLUGIN_DOWNLOAD_TIMEOUT_SECONDS
            ),
            metadata_table=os.environ.get("METADATA_TABLE", ""),
            drop_warehouse_on_delete=get_bool("DROP_WAREHOUSE_ON_DELETE", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
