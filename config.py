import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        default_currency: str,
        log_level: str,
        seed_defaults: bool,
    ) -> None:
        self.database_url = database_url
        self.default_currency = default_currency
        self.log_level = log_level
        self.seed_defaults = seed_defaults


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'ledger.db'}"
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "USD").upper()
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    seed_defaults = _env_flag("LEDGER_SEED_DEFAULTS", "1")
    return Settings(
        database_url=database_url,
        default_currency=default_currency,
        log_level=log_level,
        seed_defaults=seed_defaults,
    )
