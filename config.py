import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        scheduler_interval_minutes: int,
        reminder_lookahead_days: int,
        reminder_hour: int,
        notifications_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.scheduler_interval_minutes = scheduler_interval_minutes
        self.reminder_lookahead_days = reminder_lookahead_days
        self.reminder_hour = reminder_hour
        self.notifications_enabled = notifications_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "EXPENSES_CSRF_SECRET",
        "ebf511a733bdc213d6ccc715d338ad1c05bef4ad0ab32bb7eb60bb90f382380a",
    )
    scheduler_interval_minutes = int(
        os.getenv("EXPENSES_SCHEDULER_INTERVAL_MINUTES", "5")
    )
    reminder_lookahead_days = int(os.getenv("EXPENSES_REMINDER_LOOKAHEAD_DAYS", "3"))
    reminder_hour = int(os.getenv("EXPENSES_REMINDER_HOUR", "9"))
    notifications_enabled = _env_flag("EXPENSES_NOTIFICATIONS_ENABLED", True)
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        scheduler_interval_minutes=scheduler_interval_minutes,
        reminder_lookahead_days=reminder_lookahead_days,
        reminder_hour=reminder_hour,
        notifications_enabled=notifications_enabled,
    )
