import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_alert_threshold: int,
        log_level: str,
        scheduler_enabled: bool,
        alert_sweep_hour: int,
        alert_sweep_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_alert_threshold = default_alert_threshold
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled
        self.alert_sweep_hour = alert_sweep_hour
        self.alert_sweep_minute = alert_sweep_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSE_CONTROL_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("EXPENSE_CONTROL_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "expense_control.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("EXPENSE_CONTROL_TIMEZONE", "UTC")
    default_alert_threshold = int(
        os.getenv("EXPENSE_CONTROL_DEFAULT_ALERT_THRESHOLD", "80")
    )
    if not 0 <= default_alert_threshold <= 100:
        raise ValueError("EXPENSE_CONTROL_DEFAULT_ALERT_THRESHOLD must be 0-100")
    log_level = os.getenv("EXPENSE_CONTROL_LOG_LEVEL", "INFO").upper()
    scheduler_enabled = _env_flag("EXPENSE_CONTROL_SCHEDULER_ENABLED", "true")
    alert_sweep_hour = int(os.getenv("EXPENSE_CONTROL_ALERT_SWEEP_HOUR", "3"))
    alert_sweep_minute = int(os.getenv("EXPENSE_CONTROL_ALERT_SWEEP_MINUTE", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_alert_threshold=default_alert_threshold,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
        alert_sweep_hour=alert_sweep_hour,
        alert_sweep_minute=alert_sweep_minute,
    )
