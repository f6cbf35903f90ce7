from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class ExtractorSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    ENV: str = "development"
    ALLOWED_ORIGINS: str = ""
    RATELIMIT_STORAGE_URI: str = "memory://"
    GET_DATE_RATE_LIMIT: str = "60 per minute"

    # Job distribution
    QUEUE_BACKEND: str = "memory"
    REDIS_URL: str | None = None
    QUEUE_PREFIX: str = "pubdate"
    WORKERS_ENABLED: bool = True
    WORKER_CONCURRENCY: int = 10
    JOB_TIMEOUT_MS: int = 30_000
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: float = 1.0
    JOB_MAX_BACKOFF_SECONDS: float = 30.0
    JOB_LEASE_SECONDS: float = 90.0

    # Caches
    CACHE_TTL_SECONDS: float = 600.0
    CACHE_MAX_ITEMS: int = 1000
    FETCH_METHOD_CACHE_TTL_SECONDS: float = 600.0

    # Page acquisition
    RENDER_ENABLED: bool = True
    RENDER_DELAY_SECONDS: float = 2.0
    BROWSER_CONCURRENCY: int = 2
    BROWSER_IDLE_SECONDS: float = 60.0
    BROWSER_NAVIGATION_TIMEOUT_MS: int = 30_000

    @property
    def allowed_origins(self) -> list[str]:
        return [
            origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()
        ]


settings = ExtractorSettings()
