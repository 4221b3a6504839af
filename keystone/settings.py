"""
Keystone Settings - Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KeystoneSettings(BaseSettings):
    """
    Keystone configuration settings.

    Settings are loaded from:
    1. Environment variables (highest priority)
    2. .env file in current directory
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="KS_",  # All Keystone env vars must start with KS_
    )

    # State Configuration
    state_file: Path = Field(
        default=Path(".keystone/state.joblib"),
        description="Path of the persisted state file (env: KS_STATE_FILE)",
    )

    backup_dir: Path | None = Field(
        default=None,
        description="Directory for state backups, defaults next to the state file (env: KS_BACKUP_DIR)",
    )

    state_backups: bool = Field(
        default=True,
        description="Back up the state file before every apply (env: KS_STATE_BACKUPS)",
    )

    # Logging Configuration
    log_level: str = Field(
        default="WARNING",
        description="Logging level (DEBUG, INFO, WARNING, ERROR) (env: KS_LOG_LEVEL)",
    )

    # Execution Configuration
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per provider call for retryable errors (env: KS_MAX_ATTEMPTS)",
    )

    retry_delay_base: float = Field(
        default=0.5,
        ge=0,
        description="Base delay in seconds for exponential backoff (env: KS_RETRY_DELAY_BASE)",
    )

    retry_delay_max: float = Field(
        default=8.0,
        ge=0,
        description="Maximum backoff delay in seconds (env: KS_RETRY_DELAY_MAX)",
    )

    parallel_limit: int = Field(
        default=10,
        ge=1,
        description="Maximum concurrent operations within a wave (env: KS_PARALLEL_LIMIT)",
    )

    operation_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Timeout in seconds for a single provider call (env: KS_OPERATION_TIMEOUT)",
    )

    conflict_retries: int = Field(
        default=1,
        ge=0,
        description="Re-plan attempts after a state version conflict (env: KS_CONFLICT_RETRIES)",
    )


# Global settings instance
_settings: KeystoneSettings | None = None


def get_settings() -> KeystoneSettings:
    """
    Get the global settings instance.

    Creates the settings instance on first call, then returns cached instance.

    Returns:
        KeystoneSettings instance
    """
    global _settings
    if _settings is None:
        _settings = KeystoneSettings()
    return _settings


def reload_settings() -> KeystoneSettings:
    """
    Reload settings from environment/files.

    Useful for testing or when .env file changes.

    Returns:
        Fresh KeystoneSettings instance
    """
    global _settings
    _settings = KeystoneSettings()
    return _settings
