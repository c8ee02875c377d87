# ==================================================================================
# core/config.py : Billing Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
import logging
import sys
from typing import List, Optional

from pydantic import EmailStr, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./teammove.db"

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: Optional[str] = None
    MAIL_FROM: Optional[EmailStr] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # ------------------------
    # FRONTEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:5173"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_SINGLE: Optional[str] = None
    STRIPE_PRICE_PACK10: Optional[str] = None
    STRIPE_PRICE_PRO_CLUB: Optional[str] = None
    STRIPE_PRICE_PRO_PME: Optional[str] = None
    STRIPE_PRICE_PRO_ENTREPRISE: Optional[str] = None
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    @property
    def STRIPE_SUCCESS_URL(self) -> str:
        """Where Stripe sends the organizer back after a completed checkout."""
        return f"{self.FRONTEND_URL}/dashboard?upgrade=success&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def STRIPE_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/dashboard?upgrade=cancelled"

    # ------------------------
    # QUOTA CONFIG
    # ------------------------
    FREE_PLAN_EVENT_CAP: int = 1
    FREE_PLAN_INVITATION_CAP: int = 20
    PAST_DUE_GRACE_DAYS: int = 0
    LOW_CREDITS_THRESHOLD: int = 2

    # ------------------------
    # SWEEPER CONFIG
    # ------------------------
    SWEEPER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 300
    SWEEPER_LEASE_SECONDS: int = 600
    REMINDER_THRESHOLD_DAYS: List[int] = [7, 3, 1]
    # Recurring plans are renewed and canceled by Stripe; the sweeper only
    # downgrades one whose renewal is this many days overdue
    RECURRING_RENEWAL_GRACE_DAYS: int = Field(default=7, ge=0)

    @field_validator("REMINDER_THRESHOLD_DAYS")
    @classmethod
    def _positive_thresholds(cls, value: List[int]) -> List[int]:
        if any(day <= 0 for day in value):
            raise ValueError("REMINDER_THRESHOLD_DAYS must only contain positive day counts")
        return sorted(set(value), reverse=True)

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def IS_SQLITE(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    # ------------------------
    # Pydantic v2 Settings
    # ------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    logger.info("✅ Environment variables loaded (environment=%s, debug=%s)", settings.ENVIRONMENT, settings.DEBUG)
except ValidationError as e:
    print("❌ Environment configuration error: missing or invalid settings!")
    print(e)
    sys.exit(1)
