from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application configuration loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Local durable queue
    OFFLINE_DATABASE_URL: str = "sqlite:///./evidence-offline.db"
    QUEUE_MAX_BYTES: int = 200 * 1024 * 1024  # Quota for queued payloads + photo blobs
    MAX_PHOTO_BYTES: int = 10 * 1024 * 1024
    ALLOWED_PHOTO_MIMES: list[str] = [
        "image/jpeg",
        "image/png",
        "image/webp",
        "video/mp4",
        "video/quicktime",
        "video/x-msvideo",
        "video/webm",
    ]

    # Remote evidence platform
    REMOTE_API_URL: str = "http://localhost:54321"
    REMOTE_API_KEY: str = ""
    REMOTE_ACCESS_TOKEN: str = ""
    REMOTE_PHOTO_BUCKET: str = "evidence-photos"
    REMOTE_CALL_TIMEOUT_SECONDS: float = 30.0

    # Sync engine
    MAX_SYNC_ATTEMPTS: int = 5  # Failures before a record is dead-lettered
    DEAD_LETTER_RETENTION_DAYS: int = 90
    STATUS_REFRESH_SECONDS: float = 10.0

    # Connectivity
    CONNECTIVITY_PROBE_URL: str = ""  # Empty: probe REMOTE_API_URL
    CONNECTIVITY_PROBE_TIMEOUT_SECONDS: float = 5.0

    # Offline asset cache
    APP_ORIGIN: str = "http://localhost:5173"
    ASSET_CACHE_NAME: str = "sfep-v2"
    ASSET_SHELL_URLS: list[str] = ["/", "/index.html", "/manifest.json"]
    ASSET_SHELL_DOCUMENT: str = "/index.html"

    # Application
    ENVIRONMENT: str = "development"
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    API_VERSION: str = "v1"
    API_TITLE: str = "Evidence Custody Offline Sync"
    API_DESCRIPTION: str = "Offline queue and sync service for chain-of-custody field work"
    ENABLE_DOCS: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"

    # Monitoring
    SENTRY_DSN: str = ""
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
