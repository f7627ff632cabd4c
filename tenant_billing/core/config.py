"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Tenant Billing Engine"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # Celery (Redis broker)
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # Billing
    CURRENCY: str = "IDR"
    TRIAL_DAYS: int = 14
    GRACE_PERIOD_DAYS: int = 7
    YEARLY_DISCOUNT_PERCENT: int = 15
    INVOICE_DUE_DAYS: int = 14
    INVOICE_TAX_PERCENT: float = 0.0
    RENEWAL_INVOICE_LEAD_DAYS: int = 7

    # Reminder offsets, in days before the relevant deadline
    TRIAL_REMINDER_DAYS: list[int] = [3, 1]
    RENEWAL_REMINDER_DAYS: list[int] = [7, 3, 1]
    GRACE_WARNING_DAYS: list[int] = [5, 3, 1]

    # Usage thresholds (percent of tier limit)
    USAGE_WARNING_PERCENT: int = 70
    USAGE_CRITICAL_PERCENT: int = 90

    BILLING_EVENT_RETENTION_DAYS: int = 180

    # Shared secret for the external cron trigger. Empty rejects every call.
    CRON_SECRET: str = ""

    # Midtrans
    MIDTRANS_SERVER_KEY: str = ""
    MIDTRANS_CLIENT_KEY: str = ""
    MIDTRANS_IS_PRODUCTION: bool = False

    # Tripay
    TRIPAY_API_KEY: str = ""
    TRIPAY_PRIVATE_KEY: str = ""
    TRIPAY_MERCHANT_CODE: str = ""
    TRIPAY_IS_PRODUCTION: bool = False

    # Outbound gateway calls
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_RETRY_INITIAL_DELAY: float = 1.0
    GATEWAY_RETRY_MAX_DELAY: float = 10.0
    PAYMENT_FINISH_URL: str = ""

    # Webhook reconciliation
    RECONCILE_MAX_ATTEMPTS: int = 3

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
