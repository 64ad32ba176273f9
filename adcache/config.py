"""
adcache/config.py – application settings loaded from environment variables.
"""
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Cache store ───────────────────────────────────────────────────────────
    cache_backend: str = "sqlite"  # sqlite | memory
    cache_db_path: str = "app_data/adcache.db"
    cache_ttl_hours: float = 24.0

    # ── Fetch / retry ─────────────────────────────────────────────────────────
    fetch_max_retries: int = 3
    fetch_base_backoff: float = 1.0
    fetch_max_backoff: float = 10.0
    fetch_adaptive_ttl: bool = False

    # ── Meta Graph API ────────────────────────────────────────────────────────
    meta_access_token: str = ""
    meta_api_version: str = "v23.0"
    meta_request_timeout: float = 30.0

    # ── Rate limiting ─────────────────────────────────────────────────────────
    rate_limit_per_minute: int = 60

    # ── App ───────────────────────────────────────────────────────────────────
    app_name: str = "adcache – Ad Data Cache"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"


settings = Settings()
