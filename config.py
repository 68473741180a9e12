import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        batch_secret: str,
        lock_timeout_secs: float,
        max_catch_up_occurrences: int,
        scheduler_enabled: bool,
        scheduler_hour: int,
        scheduler_minute: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.batch_secret = batch_secret
        self.lock_timeout_secs = lock_timeout_secs
        self.max_catch_up_occurrences = max_catch_up_occurrences
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_hour = scheduler_hour
        self.scheduler_minute = scheduler_minute
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Kolkata")
    batch_secret = os.getenv(
        "LEDGER_BATCH_SECRET",
        "5f0c2d8e41b7a9936de0f4c1b28a7e65d93c0a4fb17e2d68c5a90b3e4f61d27a",
    )
    lock_timeout_secs = float(os.getenv("LEDGER_LOCK_TIMEOUT_SECS", "10"))
    max_catch_up = int(os.getenv("LEDGER_MAX_CATCH_UP", "366"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    scheduler_hour = int(os.getenv("LEDGER_SCHEDULER_HOUR", "0"))
    scheduler_minute = int(os.getenv("LEDGER_SCHEDULER_MINUTE", "5"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        batch_secret=batch_secret,
        lock_timeout_secs=lock_timeout_secs,
        max_catch_up_occurrences=max_catch_up,
        scheduler_enabled=scheduler_enabled,
        scheduler_hour=scheduler_hour,
        scheduler_minute=scheduler_minute,
        log_level=log_level,
    )
