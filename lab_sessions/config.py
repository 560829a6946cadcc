from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    BACKEND_API_URL: str | None = None
    BACKEND_API_TOKEN: str | None = None
    BACKEND_TIMEOUT_SECONDS: float | None = None
    REDIS_URL: str | None = None
    CLEANUP_RETRY_DELAY_SECONDS: int = 5 * 60
    CLEANUP_RETRY_BACKOFF_FACTOR: float = 1.0
    CLEANUP_RETRY_MAX_DELAY_SECONDS: int | None = None
    CLEANUP_MAX_ATTEMPTS: int | None = None
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def resolved_log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        if self.ENVIRONMENT in ("development", "dev"):
            return "DEBUG"
        return "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
