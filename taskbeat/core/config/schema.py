"""taskbeat configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class SchedulerConfig(BaseModel):
    """Tick behaviour (scheduler.*)."""

    lease_duration_s: int = Field(default=300, gt=0)
    tick_interval_s: int = Field(default=60, gt=0)
    timezone: str = "UTC"  # cron expressions are evaluated in this zone
    # Missing handler disables the job, same as a bad schedule.
    # Set false to keep it enabled during rolling deploys.
    disable_on_missing_handler: bool = True
    record_runs: bool = True

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value


class CleanupHandlerConfig(BaseModel):
    keep_days: int = Field(default=30, ge=1, le=365)


class ShellHandlerConfig(BaseModel):
    enabled: bool = False
    timeout: int = 60


class HandlersConfig(BaseModel):
    """Built-in handler settings (handlers.*)."""

    cleanup: CleanupHandlerConfig = Field(default_factory=CleanupHandlerConfig)
    shell: ShellHandlerConfig = Field(default_factory=ShellHandlerConfig)


class DatabaseConfig(BaseModel):
    path: str = "data/taskbeat.db"
    busy_timeout_s: float = 5.0


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        TASKBEAT_SCHEDULER__LEASE_DURATION_S=600
        TASKBEAT_DATABASE__PATH=data/prod.db
        TASKBEAT_HANDLERS__SHELL__ENABLED=true
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKBEAT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    handlers: HandlersConfig = Field(default_factory=HandlersConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)
