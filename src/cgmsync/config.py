from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./cgmsync.db"
    log_level: str = "INFO"

    dexcom_base_url: str = "https://sandbox-api.dexcom.com"
    dexcom_api_version: str = "v3"
    dexcom_timeout_seconds: float = 30.0

    # Internal caller credential used by cron/scheduled invocations
    service_role_key: str = ""
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    default_lookback_hours: int = 24
    session_lookback_days: int = 30

    sync_interval_minutes: int = 60
    max_users_per_run: int = 10  # keeps one pass inside the vendor rate limit
    lock_ttl_seconds: int = 300

    backfill_url: str = ""  # empty disables the downstream backfill call
    backfill_timeout_seconds: float = 10.0

    cors_origins: List[str] = ["*"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
