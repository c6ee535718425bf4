"""Runtime configuration for the dispatcher, watchdog and CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Queue execution and recovery thresholds."""

    handlers_config: Path = Path("config/operation_types.conf")
    handler_log_dir: Path = Path("logs")
    poll_interval_seconds: float = 5.0
    watchdog_interval_seconds: float = 60.0
    stuck_threshold_seconds: int = 1_800
    max_operation_seconds: int = 3_600
    max_retries: int = 3
    archive_retention_days: int = 30
    daily_tasks_at: str = "00:00"
    dispatcher_workers: int = 1
    retry_failed_exits: bool = False

    @property
    def daily_tasks_time(self) -> time:
        return parse_daily_time(self.daily_tasks_at)


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    """Process logging settings."""

    level: str = "INFO"
    file: Path | None = None


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".panel_ops.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        log_file = os.getenv("PANEL_OPS_LOG_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("PANEL_OPS_DB_PATH", ".panel_ops.db")),
            sqlite_busy_timeout_ms=_env_int("PANEL_OPS_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            orchestrator=OrchestratorSettings(
                handlers_config=Path(
                    os.getenv("PANEL_OPS_HANDLERS_CONFIG", "config/operation_types.conf"),
                ),
                handler_log_dir=Path(os.getenv("PANEL_OPS_HANDLER_LOG_DIR", "logs")),
                poll_interval_seconds=_env_float("PANEL_OPS_POLL_INTERVAL_SECONDS", 5.0),
                watchdog_interval_seconds=_env_float(
                    "PANEL_OPS_WATCHDOG_INTERVAL_SECONDS",
                    60.0,
                ),
                stuck_threshold_seconds=_env_int("PANEL_OPS_STUCK_THRESHOLD_SECONDS", 1_800),
                max_operation_seconds=_env_int("PANEL_OPS_MAX_OPERATION_SECONDS", 3_600),
                max_retries=_env_int("PANEL_OPS_MAX_RETRIES", 3),
                archive_retention_days=_env_int("PANEL_OPS_ARCHIVE_RETENTION_DAYS", 30),
                daily_tasks_at=os.getenv("PANEL_OPS_DAILY_TASKS_AT", "00:00").strip(),
                dispatcher_workers=_env_int("PANEL_OPS_DISPATCHER_WORKERS", 1),
                retry_failed_exits=_env_bool("PANEL_OPS_RETRY_FAILED_EXITS", default=False),
            ),
            logging=LoggingSettings(
                level=os.getenv("PANEL_OPS_LOG_LEVEL", "INFO").strip().upper(),
                file=Path(log_file) if log_file else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any threshold is out of range."""

        orchestrator = self.orchestrator
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("PANEL_OPS_POLL_INTERVAL_SECONDS must be > 0.")
        if orchestrator.watchdog_interval_seconds <= 0:
            raise ValueError("PANEL_OPS_WATCHDOG_INTERVAL_SECONDS must be > 0.")
        if orchestrator.stuck_threshold_seconds <= 0:
            raise ValueError("PANEL_OPS_STUCK_THRESHOLD_SECONDS must be > 0.")
        if orchestrator.max_operation_seconds < orchestrator.stuck_threshold_seconds:
            raise ValueError(
                "PANEL_OPS_MAX_OPERATION_SECONDS must be >= PANEL_OPS_STUCK_THRESHOLD_SECONDS.",
            )
        if orchestrator.max_retries < 0:
            raise ValueError("PANEL_OPS_MAX_RETRIES must be >= 0.")
        if orchestrator.archive_retention_days < 0:
            raise ValueError("PANEL_OPS_ARCHIVE_RETENTION_DAYS must be >= 0.")
        if orchestrator.dispatcher_workers < 1:
            raise ValueError("PANEL_OPS_DISPATCHER_WORKERS must be >= 1.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("PANEL_OPS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        parse_daily_time(orchestrator.daily_tasks_at)
        if not isinstance(logging.getLevelName(self.logging.level), int):
            raise ValueError(f"Invalid PANEL_OPS_LOG_LEVEL: {self.logging.level!r}")


def parse_daily_time(value: str) -> time:
    """Parse ``HH:MM`` into a UTC wall-clock time."""

    hours_raw, sep, minutes_raw = value.partition(":")
    try:
        if not sep:
            raise ValueError(value)
        return time(hour=int(hours_raw), minute=int(minutes_raw))
    except ValueError as error:
        raise ValueError(
            f"Invalid PANEL_OPS_DAILY_TASKS_AT value: {value!r}. Expected 'HH:MM'.",
        ) from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
