from __future__ import annotations

from pydantic import AliasChoices, Field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    CATALOG_API_BASE_URL: str = Field(
        validation_alias=AliasChoices("CATALOG_API_BASE_URL", "CATALOG_BASE_URL")
    )
    CATALOG_API_KEY: str | None = None
    CATALOG_STORE_ID: str | None = None
    CATALOG_PAGE_SIZE: int = 100
    REQUEST_TIMEOUT_SEC: float = 20.0

    SERVICE_API_KEY: str
    CRON_SECRET: str | None = None
    WEBHOOK_SECRET: str | None = None
    ADMIN_UI_ORIGINS: str = ""
    TRUST_PROXY_HEADERS: bool = False

    SYNC_MIN_INTERVAL_HOURS: float = 12.0
    SYNC_MAX_DURATION_SEC: float = 900.0
    SYNC_STALE_RUN_SEC: float = 3600.0
    SYNC_WORKER_CONCURRENCY: int = 4
    SYNC_DETAIL_MAX_ERRORS: int = 100
    SYNC_SYSTEM_ACTOR: str = "catalog-sync"
    SYNC_AUTO_APPLY_SEVERITIES: str = ""

    CHANGE_APPLY_ON_APPROVE: bool = True

    def auto_apply_severities(self) -> set[str]:
        return {
            item.strip().lower()
            for item in self.SYNC_AUTO_APPLY_SEVERITIES.split(",")
            if item.strip()
        }


settings = Settings()
