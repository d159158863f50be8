"""Runtime settings.

All values come from environment variables (a ``.env`` file in the working
directory is loaded first when present).  Import the module-level ``settings``
instance rather than constructing ``Settings`` directly.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    return int(raw) if raw else default


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    return float(raw) if raw else default


@dataclass
class Settings:
    app_name: str = "klinestore"
    app_host: str = "127.0.0.1"
    app_port: int = 8000
    log_level: str = "INFO"

    db_path: Path = field(default_factory=lambda: Path("data") / "klinestore.db")

    # Bybit endpoints
    bybit_rest_url:    str = "https://api.bybit.com"
    bybit_archive_url: str = "https://public.bybit.com/kline_for_metatrader4"
    bybit_ws_url:      str = "wss://stream.bybit.com/v5/public/linear"

    # Fetch tuning
    live_max_calls_per_minute: int   = 10
    live_page_limit:           int   = 1000
    archive_batch_size:        int   = 500
    backfill_batch_days:       int   = 7
    http_timeout:              float = 30.0

    @property
    def database_url(self) -> str:
        return os.getenv("DATABASE_URL", "") or f"sqlite:///{self.db_path}"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings with environment variable overrides."""
        s = cls()
        s.app_name  = os.getenv("APP_NAME", s.app_name)
        s.app_host  = os.getenv("APP_HOST", s.app_host)
        s.app_port  = _env_int("APP_PORT", s.app_port)
        s.log_level = os.getenv("LOG_LEVEL", s.log_level).upper()
        s.db_path   = Path(os.getenv("DB_PATH", str(s.db_path)))

        s.bybit_rest_url    = os.getenv("BYBIT_REST_URL", s.bybit_rest_url).rstrip("/")
        s.bybit_archive_url = os.getenv("BYBIT_ARCHIVE_URL", s.bybit_archive_url).rstrip("/")
        s.bybit_ws_url      = os.getenv("BYBIT_WS_URL", s.bybit_ws_url)

        s.live_max_calls_per_minute = _env_int("LIVE_MAX_CALLS_PER_MINUTE", s.live_max_calls_per_minute)
        s.live_page_limit           = _env_int("LIVE_PAGE_LIMIT", s.live_page_limit)
        s.archive_batch_size        = _env_int("ARCHIVE_BATCH_SIZE", s.archive_batch_size)
        s.backfill_batch_days       = _env_int("BACKFILL_BATCH_DAYS", s.backfill_batch_days)
        s.http_timeout              = _env_float("HTTP_TIMEOUT", s.http_timeout)
        return s


settings = Settings.from_env()
