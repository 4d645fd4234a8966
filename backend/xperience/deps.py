"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    # Origin that hosts our own /upsell and /confirmation pages
    APP_BASE_URL: str = "http://localhost:3000"

    # Whop processor
    WHOP_API_URL: str = "https://api.whop.com/api/v1"
    WHOP_API_KEY: Optional[str] = None
    WHOP_COMPANY_ID: Optional[str] = None
    WHOP_WEBHOOK_SECRET: Optional[str] = None

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # Identity resolution polling (bounded: initial + (attempts - 1) * retry)
    IDENTITY_MAX_ATTEMPTS: int = 10
    IDENTITY_INITIAL_DELAY_SECONDS: float = 2.0
    IDENTITY_RETRY_DELAY_SECONDS: float = 1.0
    IDENTITY_CACHE_TTL_SECONDS: int = 3600  # 1 hour

    # Confirmation page fallback window when no session token is available
    PURCHASE_WINDOW_MINUTES: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
