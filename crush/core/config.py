from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at the project root: crush/core/config.py -> crush/core -> crush -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"


class Settings(BaseSettings):
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./crush.db"
    # Comma-separated origin list; "*" in development
    cors_origins: str = "*"
    rate_limit_per_minute: int = 60
    # /promo/validate and /promo/apply: keeps code guessing slow
    promo_rate_limit_per_minute: int = 10
    admin_secret: str = ""             # X-Admin-Secret for /admin/*
    environment: str = "development"
    # Stripe: checkout sessions, single-use coupons, signed webhooks
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""    # whsec_...
    stripe_monthly_price_id: str = "price_monthly"
    stripe_quarterly_price_id: str = "price_quarterly"
    stripe_yearly_price_id: str = "price_yearly"
    stripe_timeout_seconds: float = 10.0
    stripe_max_retries: int = 2        # extra attempts on connection/rate-limit errors
    stripe_retry_wait_seconds: float = 0.5
    # Success/cancel redirect base for checkout
    app_url: str = "http://localhost:3000"
    # Dedup records for processed webhook events
    webhook_event_retention_days: int = 30
    # pending/applied redemptions older than this become expired
    pending_redemption_ttl_hours: int = 72
    usage_increment_retries: int = 3
    usage_increment_retry_wait_seconds: float = 0.2

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator(
        "stripe_secret_key",
        "stripe_webhook_secret",
        "stripe_monthly_price_id",
        "stripe_quarterly_price_id",
        "stripe_yearly_price_id",
        "admin_secret",
        mode="before",
    )
    @classmethod
    def strip_secrets(cls, v: str | None) -> str:
        """Trims whitespace picked up when keys are pasted into .env."""
        return (v or "").strip()

    @field_validator("app_url", mode="before")
    @classmethod
    def strip_app_url(cls, v: str | None) -> str:
        return (v or "").strip().rstrip("/")

    def price_id_for(self, plan_id: str | None) -> str | None:
        """Processor price id for a plan; None for unknown plans."""
        prices = {
            "monthly": self.stripe_monthly_price_id,
            "quarterly": self.stripe_quarterly_price_id,
            "yearly": self.stripe_yearly_price_id,
        }
        return prices.get((plan_id or "").strip().lower()) or None


settings = Settings()


def is_stripe_configured() -> bool:
    return bool(settings.stripe_secret_key and settings.stripe_webhook_secret)
