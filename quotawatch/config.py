"""Runtime configuration for the scheduler, notifications and history.

Settings are pydantic models persisted as JSON values in the ``settings``
table (see ``Database.set_setting``).  Server options come from the
environment:

- ``QUOTAWATCH_HOST`` / ``QUOTAWATCH_PORT``: local API bind address
- ``QUOTAWATCH_DB``: SQLite path (default ``~/.quotawatch/quotawatch.db``)
- ``QUOTAWATCH_API_TOKEN``: optional bearer token for the local API

The CLI keeps its own small client config (port + token) in
``~/.config/quotawatch/cli.json``.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Literal, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

PAUSE_THRESHOLD = 3
RESET_DROP_THRESHOLD = 40.0
DEFAULT_THRESHOLDS = [50, 75, 90]

MIN_INTERVAL_SECONDS = 10
DEFAULT_INTERVAL_SECONDS = 300  # 5 minutes
MAX_BACKOFF_SECONDS = 3600  # 1 hour

# (utilization floor, seconds) checked top-down; below every floor -> idle interval
ADAPTIVE_BUCKETS = [(90.0, 60), (75.0, 180), (50.0, 300)]
ADAPTIVE_IDLE_INTERVAL = 600

REQUEST_TIMEOUT = 30.0
MAX_CONCURRENT_FETCHES = 4

UPCOMING_RESET_WINDOW = 3600  # 1 hour
UPCOMING_RESET_FLOOR = 75.0

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 31415
DEFAULT_RETENTION_DAYS = 90

SCHEDULER_KEY = "scheduler"
NOTIFICATIONS_KEY = "notifications"
RETENTION_KEY = "history_retention"

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

ModelT = TypeVar("ModelT", bound=BaseModel)


class SchedulerConfig(BaseModel):
    """Polling policy.

    Treat instances as values: change them through :meth:`updated`, which
    re-runs validation.

    >>> SchedulerConfig().mode
    'adaptive'
    >>> SchedulerConfig().min_interval_seconds
    10
    """

    mode: Literal["fixed", "adaptive"] = "adaptive"
    fixed_interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    min_interval_seconds: int = Field(default=MIN_INTERVAL_SECONDS, ge=1)
    pause_threshold: int = Field(default=PAUSE_THRESHOLD, ge=1)
    adaptive_buckets: list[tuple[float, int]] = Field(
        default_factory=lambda: list(ADAPTIVE_BUCKETS)
    )
    adaptive_idle_interval: int = ADAPTIVE_IDLE_INTERVAL
    max_backoff_seconds: int = MAX_BACKOFF_SECONDS
    request_timeout: float = Field(default=REQUEST_TIMEOUT, gt=0)
    max_concurrency: int = Field(default=MAX_CONCURRENT_FETCHES, ge=1)

    @field_validator("adaptive_buckets")
    @classmethod
    def _sort_buckets(cls, value: list[tuple[float, int]]) -> list[tuple[float, int]]:
        for floor, seconds in value:
            if not 0 <= floor <= 100:
                raise ValueError(f"Bucket floor must be within 0..100, got {floor}")
            if seconds <= 0:
                raise ValueError(f"Bucket interval must be positive, got {seconds}")
        return sorted(value, key=lambda b: b[0], reverse=True)

    @model_validator(mode="after")
    def _check_floor(self) -> "SchedulerConfig":
        if self.fixed_interval_seconds < self.min_interval_seconds:
            raise ValueError(
                f"fixed_interval_seconds ({self.fixed_interval_seconds}) is below "
                f"min_interval_seconds ({self.min_interval_seconds})"
            )
        return self

    def updated(self, **changes) -> "SchedulerConfig":
        """Return a validated copy with *changes* applied.

        >>> SchedulerConfig().updated(mode="fixed", fixed_interval_seconds=120).fixed_interval_seconds
        120
        """
        return SchedulerConfig.model_validate({**self.model_dump(), **changes})


class NotificationSettings(BaseModel):
    """Notification rules and Do-Not-Disturb window.

    >>> NotificationSettings(thresholds=[90, 50, 75, 50]).thresholds
    [50, 75, 90]
    """

    enabled: bool = True
    thresholds: list[int] = Field(default_factory=lambda: list(DEFAULT_THRESHOLDS))
    notify_on_reset: bool = True
    notify_on_expiry: bool = True
    reset_drop_threshold: float = Field(default=RESET_DROP_THRESHOLD, gt=0, le=100)
    upcoming_reset_window_seconds: int = Field(default=UPCOMING_RESET_WINDOW, ge=0)
    upcoming_reset_floor: float = Field(default=UPCOMING_RESET_FLOOR, ge=0, le=100)
    dnd_enabled: bool = False
    dnd_start_time: str = "22:00"
    dnd_end_time: str = "08:00"

    @field_validator("thresholds")
    @classmethod
    def _normalize_thresholds(cls, value: list[int]) -> list[int]:
        for t in value:
            if not 0 < t <= 100:
                raise ValueError(f"Threshold must be within 1..100, got {t}")
        return sorted(set(value))

    @field_validator("dnd_start_time", "dnd_end_time")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"Expected HH:MM time, got {value!r}")
        return value


class HistoryRetention(BaseModel):
    """Age-based purge policy.  ``retention_days == 0`` keeps everything."""

    retention_days: int = Field(default=DEFAULT_RETENTION_DAYS, ge=0)
    auto_cleanup: bool = True


class ServerSettings(BaseModel):
    """Bind address, database path and API token for ``quotawatch serve``."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    db_path: Optional[str] = None
    api_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ServerSettings":
        """Build settings from ``QUOTAWATCH_*`` environment variables."""
        return cls(
            host=os.environ.get("QUOTAWATCH_HOST", DEFAULT_HOST),
            port=int(os.environ.get("QUOTAWATCH_PORT", str(DEFAULT_PORT))),
            db_path=os.environ.get("QUOTAWATCH_DB") or None,
            api_token=os.environ.get("QUOTAWATCH_API_TOKEN") or None,
        )


# ---------------------------------------------------------------------------
# Settings persistence (JSON values in the settings table)
# ---------------------------------------------------------------------------


def load_settings(db, key: str, model: type[ModelT]) -> ModelT:
    """Load a settings model from the DB, falling back to defaults.

    Corrupt or outdated values are logged and replaced by defaults so a
    bad row never prevents startup.

    >>> from quotawatch.web.database import Database
    >>> load_settings(Database(":memory:"), SCHEDULER_KEY, SchedulerConfig).mode
    'adaptive'
    """
    raw = db.get_setting(key)
    if raw is None:
        return model()
    try:
        return model.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring invalid %s settings: %s", key, e)
        return model()


def save_settings(db, key: str, value: BaseModel) -> None:
    """Persist a settings model as JSON.

    >>> from quotawatch.web.database import Database
    >>> db = Database(":memory:")
    >>> save_settings(db, RETENTION_KEY, HistoryRetention(retention_days=7))
    >>> load_settings(db, RETENTION_KEY, HistoryRetention).retention_days
    7
    """
    db.set_setting(key, value.model_dump_json())


# ---------------------------------------------------------------------------
# CLI client config
# ---------------------------------------------------------------------------


def default_cli_config_path() -> Path:
    """Return the CLI config path: ~/.config/quotawatch/cli.json"""
    return Path.home() / ".config" / "quotawatch" / "cli.json"


class CliConfig(BaseModel):
    """Where the CLI finds the local API.

    >>> CliConfig().port
    31415
    """

    port: int = Field(default=DEFAULT_PORT, ge=1024, le=65535)
    token: Optional[str] = None


def load_cli_config(path: Optional[Path] = None) -> CliConfig:
    """Read the CLI config, returning defaults when missing or corrupt."""
    path = path or default_cli_config_path()
    if not path.exists():
        return CliConfig()
    try:
        return CliConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring unreadable CLI config %s: %s", path, e)
        return CliConfig()


def save_cli_config(config: CliConfig, path: Optional[Path] = None) -> Path:
    """Write the CLI config atomically (temp file + replace)."""
    path = path or default_cli_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(config.model_dump(), indent=2)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(tmp_fd, data.encode("utf-8"))
        os.close(tmp_fd)
        os.replace(tmp_path, str(path))
    except Exception:
        try:
            os.close(tmp_fd)
        except OSError:
            pass
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return path
