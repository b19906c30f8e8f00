"""
Configuration interface for event log maintenance.

Paths and thresholds for a maintenance run, validated by pydantic and
optionally loaded from a YAML file. Every field has a default, so an empty
file (or no file at all) reproduces the stock policy:

    - delete events older than 7 days
    - truncate payloads over 10,000 bytes once they are a day old
    - rotate the data file to a backup when it stays above 50 MiB

Usage:
    from event_log_maintenance.maintenance.config_interface import load_config

    config = load_config("config/maintenance.yaml")
    config.retention_max_age      # timedelta(days=7)
    config.resolved_backup_dir    # <db dir>/backups unless configured
"""
from datetime import timedelta
from pathlib import Path
from typing import Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_DB_PATH = Path("events.db")
DEFAULT_BACKUP_DIRNAME = "backups"
DEFAULT_RETENTION_DAYS = 7
DEFAULT_TRUNCATION_MIN_AGE_HOURS = 24
DEFAULT_TRUNCATION_SIZE_THRESHOLD = 10_000
DEFAULT_ROTATION_THRESHOLD_BYTES = 50 * 1024 * 1024
DEFAULT_STATS_WINDOW_DAYS = 7


class MaintenanceConfig(BaseModel):
    """Validated configuration for a maintenance run - forbids unknown keys."""

    model_config = ConfigDict(extra="forbid", validate_default=True, frozen=True)

    db_path: Path = DEFAULT_DB_PATH
    backup_dir: Path | None = None
    retention_days: int = Field(default=DEFAULT_RETENTION_DAYS, gt=0)
    truncation_min_age_hours: int = Field(default=DEFAULT_TRUNCATION_MIN_AGE_HOURS, gt=0)
    truncation_size_threshold: int = Field(default=DEFAULT_TRUNCATION_SIZE_THRESHOLD, gt=0)
    rotation_threshold_bytes: int = Field(default=DEFAULT_ROTATION_THRESHOLD_BYTES, gt=0)
    stats_window_days: int = Field(default=DEFAULT_STATS_WINDOW_DAYS, gt=0)
    atomic_retention: bool = False

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Path) -> Path:
        """Reject paths that point at a directory."""
        if v.is_dir():
            raise ValueError(f"db_path must be a file path, got directory: {v}")
        return v

    @property
    def resolved_backup_dir(self) -> Path:
        """Backup directory, defaulting to ``backups/`` beside the data file."""
        if self.backup_dir is not None:
            return self.backup_dir
        return self.db_path.parent / DEFAULT_BACKUP_DIRNAME

    @property
    def retention_max_age(self) -> timedelta:  # noqa: D102
        return timedelta(days=self.retention_days)

    @property
    def truncation_min_age(self) -> timedelta:  # noqa: D102
        return timedelta(hours=self.truncation_min_age_hours)

    @property
    def stats_window(self) -> timedelta:  # noqa: D102
        return timedelta(days=self.stats_window_days)


def load_config(config_path: Union[str, Path]) -> MaintenanceConfig:
    """
    Load and validate configuration from a YAML file.

    :param config_path: Path to the YAML file.
    :return: Validated configuration.
    :raises FileNotFoundError: If the file does not exist.
    :raises ValueError: If the YAML is not a mapping or fails validation.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError(f"Configuration root must be a mapping, got {type(raw_config).__name__}")

    try:
        return MaintenanceConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {config_path}: {e}") from e
