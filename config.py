import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        period_policy: str,
        alert_threshold: float,
        reconcile_max_attempts: int,
        scheduler_enabled: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.period_policy = period_policy
        self.alert_threshold = alert_threshold
        self.reconcile_max_attempts = reconcile_max_attempts
        self.scheduler_enabled = scheduler_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "Europe/Berlin")
    period_policy = os.getenv("BUDGETS_PERIOD_POLICY", "current_month")
    alert_threshold = float(os.getenv("BUDGETS_ALERT_THRESHOLD", "0.8"))
    reconcile_max_attempts = max(
        1, int(os.getenv("BUDGETS_RECONCILE_MAX_ATTEMPTS", "3"))
    )
    scheduler_enabled = _env_flag("BUDGETS_SCHEDULER_ENABLED")
    log_level = os.getenv("BUDGETS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        period_policy=period_policy,
        alert_threshold=alert_threshold,
        reconcile_max_attempts=reconcile_max_attempts,
        scheduler_enabled=scheduler_enabled,
        log_level=log_level,
    )
