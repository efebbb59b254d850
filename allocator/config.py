from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Allocator"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    SQL_LOG_LEVEL: str = "WARNING"
    PORT: int = 8000

    DATABASE_URL: str = ""
    DATABASE_SYNC_URL: str = ""
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_RECYCLE: int = 300
    DB_SSL_REQUIRED: bool = True

    JWT_PRIVATE_KEY_PATH: Optional[str] = "keys/private.pem"
    JWT_PUBLIC_KEY_PATH: Optional[str] = "keys/public.pem"
    JWT_ALGORITHM: str = "RS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    CORS_ORIGINS: str = "http://localhost:3000"
    CORS_ORIGIN_REGEX: Optional[str] = None

    # Allocation core
    ALLOCATION_WRITE_RETRY_ATTEMPTS: int = 3
    AUDIT_DEFAULT_PAGE_SIZE: int = 100
    AUDIT_EXPORT_MAX_ROWS: int = 10_000
    AUDIT_SUMMARY_TOP_USERS: int = 10
    AUDIT_RECENT_ACTIVITY_LIMIT: int = 10
    # Movement cancellation leaves the linked allocation alone unless enabled.
    CANCEL_ALLOCATION_ON_MOVEMENT_CANCEL: bool = False

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
