from __future__ import annotations

from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True, slots=True)
class BatchPolicy:
    """Tunables for one batch run (worker pool, retries, failure threshold)."""

    concurrency: int = 8
    max_attempts: int = 4
    backoff_initial_seconds: float = 0.2
    backoff_max_seconds: float = 5.0
    failure_threshold: float = 0.10
    timeout_seconds: float | None = 600.0
    max_uid_regenerations: int = 5


@dataclass(frozen=True, slots=True)
class LinkUrlConfig:
    main_domain: str
    short_url_base: str
    uid_length: int = 10


class Settings(BaseSettings):
    """App settings loaded from environment variables (.env)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "Survey Links"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOW_ORIGINS: str = "*"  # "*" or "https://a.com,https://b.com"
    CORS_ALLOW_CREDENTIALS: bool = False

    # DATABASE / CACHE
    DATABASE_URL: str = "sqlite+aiosqlite:///./surveylinks.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    REDIS_URL: str = "redis://127.0.0.1:6379/0"  # empty string disables the stats cache
    STATS_CACHE_TTL_SECONDS: int = 15

    # PUBLIC URLS
    MAIN_DOMAIN: str = "protegeresearchsurvey.com"
    SHORT_URL_BASE: str = ""  # defaults to https://<MAIN_DOMAIN>/s
    UID_LENGTH: int = 10

    # BATCH GENERATION
    BATCH_CONCURRENCY: int = 8
    BATCH_MAX_ATTEMPTS: int = 4
    BATCH_BACKOFF_INITIAL_SECONDS: float = 0.2
    BATCH_BACKOFF_MAX_SECONDS: float = 5.0
    BATCH_FAILURE_THRESHOLD: float = 0.10
    BATCH_TIMEOUT_SECONDS: float = 600.0
    UID_MAX_REGENERATIONS: int = 5

    # REQUEST LIMITS
    MAX_LINKS_PER_REQUEST: int = 10_000
    MAX_LINKS_PER_VENDOR: int = 5_000
    MAX_LINKS_TOTAL: int = 50_000

    def cors_origins(self) -> list[str]:
        s = (self.CORS_ALLOW_ORIGINS or "").strip()
        if not s or s == "*":
            return ["*"]
        return [x.strip() for x in s.split(",") if x.strip()]

    def short_url_base(self) -> str:
        base = (self.SHORT_URL_BASE or "").strip().rstrip("/")
        return base or f"https://{self.MAIN_DOMAIN}/s"

    def url_config(self) -> LinkUrlConfig:
        return LinkUrlConfig(
            main_domain=self.MAIN_DOMAIN,
            short_url_base=self.short_url_base(),
            uid_length=self.UID_LENGTH,
        )

    def batch_policy(self) -> BatchPolicy:
        return BatchPolicy(
            concurrency=max(1, self.BATCH_CONCURRENCY),
            max_attempts=max(1, self.BATCH_MAX_ATTEMPTS),
            backoff_initial_seconds=self.BATCH_BACKOFF_INITIAL_SECONDS,
            backoff_max_seconds=self.BATCH_BACKOFF_MAX_SECONDS,
            failure_threshold=self.BATCH_FAILURE_THRESHOLD,
            timeout_seconds=self.BATCH_TIMEOUT_SECONDS or None,
            max_uid_regenerations=max(0, self.UID_MAX_REGENERATIONS),
        )


settings = Settings()
