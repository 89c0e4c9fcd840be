"""Configuration management for remediator."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from remediator.constants import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_EVENT_LOG_SIZE,
    DEFAULT_FOREST_TREES,
    DEFAULT_HEALING_INTERVAL_SECONDS,
    DEFAULT_INCIDENT_HISTORY_SIZE,
    DEFAULT_REGRESSION_TOLERANCE,
    DEFAULT_REMEDIATION_COOLDOWN_SECONDS,
    DEFAULT_SAMPLING_INTERVAL_SECONDS,
    DEFAULT_SIMILARITY_THRESHOLD,
    DEFAULT_WINDOW_SIZE,
    SANDBOX_MAX_OUTPUT_BYTES,
    SANDBOX_MEMORY_LIMIT_MB,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    data_dir: str = Field(default="data", description="Directory for persisted state")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write logs to rotating files")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, description="Rotate at this size")
    log_file_backup_count: int = Field(default=5, description="Rotated files to keep")
    log_error_file_enabled: bool = Field(
        default=True, description="Write WARNING and above to a separate file"
    )

    # PostgreSQL (optional; JSON pattern store is used when unset)
    postgres_dsn: SecretStr | None = Field(
        default=None, description="DSN for pattern and audit-event persistence"
    )

    # Monitoring
    sampling_interval_seconds: float = Field(
        default=DEFAULT_SAMPLING_INTERVAL_SECONDS, gt=0, description="Metric sampling cadence"
    )
    window_size: int = Field(default=DEFAULT_WINDOW_SIZE, ge=3, description="Rolling window")

    # Healing loop
    healing_interval_seconds: float = Field(
        default=DEFAULT_HEALING_INTERVAL_SECONDS, gt=0, description="Healing tick cadence"
    )
    detection_confidence_threshold: float = Field(default=DEFAULT_CONFIDENCE_THRESHOLD)
    apply_confidence_threshold: float = Field(default=DEFAULT_CONFIDENCE_THRESHOLD)
    similarity_threshold: float = Field(default=DEFAULT_SIMILARITY_THRESHOLD)
    forest_trees: int = Field(default=DEFAULT_FOREST_TREES, ge=1)
    event_log_size: int = Field(default=DEFAULT_EVENT_LOG_SIZE, ge=1)
    heal_unknown_bug_types: bool = Field(
        default=False, description="Attempt remediation when the bug type is 'unknown'"
    )
    remediation_cooldown_seconds: float = Field(
        default=DEFAULT_REMEDIATION_COOLDOWN_SECONDS,
        ge=0,
        description="Minimum seconds between remediations of the same bug type",
    )
    incident_history_size: int = Field(
        default=DEFAULT_INCIDENT_HISTORY_SIZE,
        ge=1,
        description="Patches remembered by the generator and the sandbox",
    )

    # Sandbox
    sandbox_memory_limit_mb: int = Field(default=SANDBOX_MEMORY_LIMIT_MB, ge=32)
    sandbox_max_output_bytes: int = Field(default=SANDBOX_MAX_OUTPUT_BYTES, ge=1024)
    regression_tolerance: float = Field(default=DEFAULT_REGRESSION_TOLERANCE, gt=0)

    @field_validator(
        "detection_confidence_threshold",
        "apply_confidence_threshold",
        "similarity_threshold",
    )
    @classmethod
    def _check_unit_interval(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("threshold must be within (0, 1]")
        return value

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        return str(Path(self.log_directory) / "remediator.log")

    @property
    def error_log_file_path(self) -> str:
        return str(Path(self.log_directory) / "remediator_error.log")

    @property
    def pattern_store_path(self) -> str:
        return str(Path(self.data_dir) / "anomaly_patterns.json")

    @property
    def patch_queue_dir(self) -> str:
        return str(Path(self.data_dir) / "patches")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
