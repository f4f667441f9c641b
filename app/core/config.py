from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "Thumbnail Credits Service"
    DEBUG: bool = False
    CORS_ORIGINS: list[str] = ["*"]
    FRONTEND_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Billing
    BILLING_CURRENCY: str = "eur"
    BILLING_PERIOD_DAYS: int = 30

    # Webhook idempotency cache
    WEBHOOK_CACHE_MAX_SIZE: int = 1000
    WEBHOOK_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    WEBHOOK_CACHE_SWEEP_EVERY: int = 100

    # Security
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 60 * 24 * 7
    ADMIN_ROLE: str = "super_admin"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
