"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Saman Marketplace API"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # ── Telr ─────────────────────────────────────────────────
    TELR_STORE_ID: str = ""
    TELR_AUTH_KEY: str = ""
    TELR_REMOTE_AUTH_KEY: str = ""
    TELR_ORDER_URL: str = "https://secure.telr.com/gateway/order.json"
    TELR_REMOTE_URL: str = "https://secure.telr.com/gateway/remote.json"
    TELR_TEST_MODE: bool = True
    TELR_CURRENCY: str = "AED"
    TELR_TIMEOUT_SECONDS: float = 15.0
    TELR_RETURN_AUTHORISED_URL: str = "http://localhost:3000/payment/success"
    TELR_RETURN_DECLINED_URL: str = "http://localhost:3000/payment/failed"
    TELR_RETURN_CANCELLED_URL: str = "http://localhost:3000/payment/cancelled"

    # ── Apple Pay ────────────────────────────────────────────
    APPLE_PAY_MERCHANT_ID: str = ""
    APPLE_PAY_DISPLAY_NAME: str = "Saman"
    APPLE_PAY_DOMAIN: str = "localhost"
    APPLE_PAY_CERT_PATH: Optional[str] = None
    APPLE_PAY_KEY_PATH: Optional[str] = None

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"

    # ── CORS ─────────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20
    LOGIN_ATTEMPTS_PER_WINDOW: int = 5
    LOGIN_ATTEMPT_WINDOW_SECONDS: int = 900

    # ── Business Config ──────────────────────────────────────
    LISTING_LIFETIME_DAYS: int = 30
    RENEWAL_WINDOW_DAYS: int = 7
    REJECTED_RETENTION_DAYS: int = 7
    EXPIRY_WARNING_HOURS: int = 24
    LISTING_SWEEP_INTERVAL_SECONDS: int = 3600
    SUBSCRIPTION_ENABLED_DEFAULT: bool = False
    CHECKOUT_TOKEN_TTL_SECONDS: int = 300
    PENDING_TRANSACTION_RECONCILE_MINUTES: int = 10
    PENDING_TRANSACTION_FAIL_HOURS: int = 24

    @field_validator("LISTING_LIFETIME_DAYS", "RENEWAL_WINDOW_DAYS", "REJECTED_RETENTION_DAYS")
    @classmethod
    def _positive_days(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of days")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance: call this everywhere."""
    return Settings()


settings = get_settings()
