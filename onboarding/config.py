# onboarding/config.py
from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App
    APP_ENV: Literal["dev", "prod", "staging"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Session lifetime
    ONBOARDING_SESSION_TTL_SECONDS: int = 7200  # 2 hours of inactivity
    ONBOARDING_CACHE_TTL_SECONDS: int = 86400  # record retention for audit reads
    SESSION_HISTORY_LIMIT: int = 50

    # Background scheduler
    AUTO_SAVE_INTERVAL_SECONDS: int = 30
    SCHEDULER_TICK_SECONDS: float = 1.0
    CLEANUP_SWEEP_INTERVAL_SECONDS: int = 3600

    # Cache I/O retries
    CACHE_RETRY_ATTEMPTS: int = 3
    CACHE_RETRY_BACKOFF_SECONDS: float = 0.05

    # Step catalog
    STEP_CATALOG_EDGE_ENABLED: bool = False
    STEP_CATALOG_KEY: str = "onboarding:steps"

    # read .env and ignore any extra keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
