"""Configuration loading for the retryrounds system.

This module provides centralized configuration management:
- Load settings from environment variables and .env files
- Validate configuration using pydantic
- Provide typed access to all settings
"""

from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from retryrounds.core.filters import DEFAULT_SETUP_HOOK_NAMES


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Every field can be set through a ``RETRYROUNDS_``-prefixed environment
    variable, e.g. ``RETRYROUNDS_MAX_RETRIES=2``.
    """

    model_config = SettingsConfigDict(
        env_prefix="RETRYROUNDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Retry policy
    max_retries: int = Field(
        default=0,
        description="Extra rounds allowed after the first (0 disables retrying)",
    )
    max_failures: int = Field(
        default=0,
        description="Stop retrying once a round has this many failing tests (0 = unbounded)",
    )
    fail_on_passed_after_retry: bool = Field(
        default=False,
        description="Fail the run even when every failed test passed on retry",
    )

    # Retryability filter
    exempt_setup_failures: bool = Field(
        default=True,
        description="Do not treat tests that failed in a shared setup hook as unretried",
    )
    setup_hook_names: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SETUP_HOOK_NAMES),
        description="Function names recognised as shared setup hooks",
    )

    # Reporting
    report_backend: Literal["stdout", "jsonl"] = Field(
        default="stdout",
        description="Result reporter type",
    )
    report_path: str = Field(
        default="./retryrounds-events.jsonl",
        description="Output file for the jsonl reporter",
    )
    verbose: bool = Field(
        default=False,
        description="Print captured test output",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Ensure retry budget is non-negative."""
        if v < 0:
            raise ValueError("max_retries must be non-negative")
        return v

    @field_validator("max_failures")
    @classmethod
    def validate_max_failures(cls, v: int) -> int:
        """Ensure failure cutoff is non-negative."""
        if v < 0:
            raise ValueError("max_failures must be non-negative")
        return v

    @field_validator("setup_hook_names")
    @classmethod
    def validate_setup_hook_names(cls, v: list[str]) -> list[str]:
        """Ensure at least one usable hook name."""
        names = [name.strip() for name in v if name.strip()]
        if not names:
            raise ValueError("setup_hook_names must contain at least one name")
        return names


def load_settings(env_file: str | None = None, **overrides: Any) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.
        **overrides: Values taking precedence over the environment, such as
                 command-line flags. None values are ignored.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    if env_file:
        return Settings(_env_file=env_file, **values)  # type: ignore[call-arg]
    return Settings(**values)


__all__ = ["Settings", "load_settings"]
