from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    DEBUG: bool = False

    # DATABASE_URL must be provided via environment (Postgres in production).
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:5173"

    # Mercado Livre OAuth application
    MERCADO_LIVRE_CLIENT_ID: Optional[str] = None
    MERCADO_LIVRE_CLIENT_SECRET: Optional[str] = None
    MERCADO_LIVRE_REDIRECT_URI: Optional[str] = None
    MERCADO_LIVRE_WEBHOOK_SECRET: Optional[str] = None

    # Amazon SP-API (Login with Amazon) application
    AMAZON_CLIENT_ID: Optional[str] = None
    AMAZON_CLIENT_SECRET: Optional[str] = None
    AMAZON_REDIRECT_URI: Optional[str] = None
    AMAZON_WEBHOOK_SECRET: Optional[str] = None
    # Brazil marketplace id
    AMAZON_MARKETPLACE_ID: str = "A2Q3Y263D00KWC"

    # Shopee Open Platform partner credentials
    SHOPEE_PARTNER_ID: Optional[str] = None
    SHOPEE_PARTNER_KEY: Optional[str] = None
    SHOPEE_REDIRECT_URI: Optional[str] = None
    SHOPEE_WEBHOOK_SECRET: Optional[str] = None

    # When False, a marketplace with no webhook secret configured skips
    # signature verification (development default). Production deployments
    # should set this to True so unsigned webhooks are rejected.
    WEBHOOK_SIGNATURE_STRICT: bool = False

    # Shared secret expected in the x-cron-secret header of the sweep endpoint.
    CRON_SECRET: Optional[str] = None

    # Token lifecycle
    TOKEN_REFRESH_MARGIN_MINUTES: int = 5
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Sync pipeline
    DEFAULT_SYNC_WINDOW_DAYS: int = 30
    SYNC_JOB_ATTEMPTS: int = 3
    SYNC_JOB_BACKOFF_MS: int = 5000
    SYNC_PAGE_DELAY_MS: int = 1000
    SYNC_STALE_MINUTES: int = 10
    SYNC_DEDUPE_WINDOW_SECONDS: int = 60
    SYNC_MAX_PAGES: int = 200
    WEBHOOK_JOB_ATTEMPTS: int = 3
    WEBHOOK_JOB_BACKOFF_MS: int = 1000

    # Job worker pool
    JOB_VISIBILITY_TIMEOUT_SECONDS: int = 300
    WORKER_CONCURRENCY: int = 5
    WORKER_POLL_INTERVAL_SECONDS: float = 2.0
    CRON_SWEEP_INTERVAL_SECONDS: int = 3600

    # Business defaults used when a tenant has no catalog match / tax settings.
    PRODUCT_COST_ESTIMATE_RATIO: float = 0.6
    DEFAULT_COMMISSION_RATE: float = 0.16
    DEFAULT_TAX_REGIME: str = "SIMPLES_NACIONAL"
    DEFAULT_SIMPLES_RATE: float = 0.06
    DEFAULT_ICMS_RATE: float = 0.18
    DEFAULT_PIS_COFINS_RATE: float = 0.0465
    DEFAULT_ISS_RATE: Optional[float] = None

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def secret_key(self) -> str:
        return self.SECRET_KEY

    @property
    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]
        if self.FRONTEND_URL and self.FRONTEND_URL not in origins:
            origins.append(self.FRONTEND_URL)
        return origins

    def webhook_secret_for(self, marketplace: str) -> Optional[str]:
        return {
            "MERCADO_LIVRE": self.MERCADO_LIVRE_WEBHOOK_SECRET,
            "AMAZON": self.AMAZON_WEBHOOK_SECRET,
            "SHOPEE": self.SHOPEE_WEBHOOK_SECRET,
        }.get(getattr(marketplace, "value", marketplace))


settings = Settings()
