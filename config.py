import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        currency_symbol: str,
        sweep_hour: int,
        sweep_minute: int,
        sweep_max_seconds: float,
        db_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.currency_symbol = currency_symbol
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute
        self.sweep_max_seconds = sweep_max_seconds
        self.db_timeout_secs = db_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "ledger.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    currency_symbol = os.getenv("LEDGER_CURRENCY_SYMBOL", "€")
    sweep_hour = int(os.getenv("LEDGER_SWEEP_HOUR", "3"))
    sweep_minute = int(os.getenv("LEDGER_SWEEP_MINUTE", "15"))
    sweep_max_seconds = float(os.getenv("LEDGER_SWEEP_MAX_SECONDS", "300"))
    db_timeout_secs = float(os.getenv("LEDGER_DB_TIMEOUT_SECS", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        currency_symbol=currency_symbol,
        sweep_hour=sweep_hour,
        sweep_minute=sweep_minute,
        sweep_max_seconds=sweep_max_seconds,
        db_timeout_secs=db_timeout_secs,
    )
