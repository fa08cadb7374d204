from __future__ import annotations

import os

APP_VERSION = "1.4.0"

_DEFAULT_SECRET_KEYS = frozenset({"change-me-in-production", ""})


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    PROJECT_NAME: str = "ProcessFlow"
    API_V1_PREFIX: str = "/api/v1"

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: str = os.getenv("POSTGRES_PORT", "5432")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "processflow")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "processflow")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "processflow")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    RESET_DB: bool = _flag("RESET_DB")

    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-in-production")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "10080"))
    AUTH_USER_CACHE_TTL_SECONDS: int = int(os.getenv("AUTH_USER_CACHE_TTL_SECONDS", "60"))
    RATE_LIMIT_ENABLED: bool = _flag("RATE_LIMIT_ENABLED", "true")

    # Object storage for uploaded documents (local filesystem backend)
    STORAGE_ROOT: str = os.getenv("STORAGE_ROOT", "./storage")
    SIGNED_URL_TTL_SECONDS: int = int(os.getenv("SIGNED_URL_TTL_SECONDS", "300"))
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

    # Lixeira (trash) retention
    TRASH_RETENTION_DAYS: int = int(os.getenv("TRASH_RETENTION_DAYS", "15"))
    TRASH_PURGE_INTERVAL_SECONDS: int = int(os.getenv("TRASH_PURGE_INTERVAL_SECONDS", "3600"))

    # First administrator, created at startup when no admin exists yet
    ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "")
    ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "")

    ALLOWED_ORIGINS: list[str] = [
        o.strip()
        for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        if o.strip()
    ]

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


settings = Settings()
