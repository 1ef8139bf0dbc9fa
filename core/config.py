# ==================================================================================
# core/config.py — BillSync Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import EmailStr, ValidationError
import sys


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./billsync.db"

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: str | None = None
    MAIL_FROM: EmailStr | None = None

    # ------------------------
    # FRONTEND CONFIG (links in admin emails)
    # ------------------------
    FRONTEND_URL: str = "http://localhost:5173"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None

    # ------------------------
    # WEBHOOK PROCESSING
    # ------------------------
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_RETRY_BASE_DELAY_SECONDS: float = 1.0
    WEBHOOK_MAX_EVENT_AGE_SECONDS: int = 24 * 60 * 60
    WEBHOOK_ORDERING_GAP_WARNING_SECONDS: int = 60 * 60
    WEBHOOK_SIGNATURE_TOLERANCE_SECONDS: int = 300

    # ------------------------
    # MAINTENANCE
    # ------------------------
    WEBHOOK_EVENT_RETENTION_DAYS: int = 30
    WEBHOOK_CLEANUP_INTERVAL_SECONDS: int = 60 * 60

    @property
    def BILLING_SETTINGS_URL(self) -> str:
        """Where organization admins manage their subscription."""
        return f"{self.FRONTEND_URL}/admin/billing"

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'test' | 'production'
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def WEBHOOK_VERIFICATION_MODE(self) -> str:
        """'strict' refuses to run without a webhook secret, 'lenient' allows it."""
        return "strict" if self.IS_PRODUCTION else "lenient"

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
    print("✅ Environment variables loaded successfully.")
    print(f"🌍 Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
except ValidationError as e:
    print("❌ Environment configuration error — missing or invalid settings!")
    print(e)
    sys.exit(1)
