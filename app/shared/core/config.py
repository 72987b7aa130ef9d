from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


FEE_BASIS_OPTIONS = ("pre_credit", "post_credit")

# Most gateway calls made while one renewal lease is held:
# find_order_by_receipt on a half-finished attempt, then create_order
LOCKED_GATEWAY_CALLS = 2


class Settings(BaseSettings):
    """
    Main configuration for the Medora billing engine.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "Medora Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None
    OTEL_EXPORTER_OTLP_INSECURE: bool = False
    TESTING: bool = False
    RATELIMIT_ENABLED: bool = True

    @model_validator(mode='after')
    def validate_billing_config(self) -> 'Settings':
        """Ensure lock leases, fee policy and production keys are consistent."""
        if self.FEE_BASIS not in FEE_BASIS_OPTIONS:
            raise ValueError(f"FEE_BASIS must be one of {FEE_BASIS_OPTIONS}. Current: {self.FEE_BASIS}")

        # A lease that expires mid gateway call would let a second holder in.
        longest = self.longest_locked_operation_seconds
        if self.LOCK_TTL_SECONDS <= longest:
            raise ValueError(
                f"LOCK_TTL_SECONDS ({self.LOCK_TTL_SECONDS}) must exceed the longest locked operation: "
                f"{LOCKED_GATEWAY_CALLS} x GATEWAY_TIMEOUT_SECONDS + LOCK_DB_MARGIN_SECONDS = {longest}."
            )

        # The orphan scan must never clear a holder that is still inside its gateway calls
        if not longest < self.LOCK_ORPHAN_AFTER_SECONDS < self.LOCK_TTL_SECONDS:
            raise ValueError(
                f"LOCK_ORPHAN_AFTER_SECONDS ({self.LOCK_ORPHAN_AFTER_SECONDS}) must be above the longest "
                f"locked operation ({longest}) and below LOCK_TTL_SECONDS ({self.LOCK_TTL_SECONDS})."
            )

        if self.TESTING:
            return self

        if self.is_production:
            if not self.RAZORPAY_KEY_ID or not self.RAZORPAY_KEY_SECRET:
                raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required in production.")

            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required in production.")

            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    "SECURITY ERROR: DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' "
                    f"in production. Current: {self.DB_SSL_MODE}"
                )

            if not self.REDIS_URL:
                import structlog
                structlog.get_logger().warning(
                    "redis_not_configured_in_production",
                    msg="Locks and alert counters fall back to process memory without REDIS_URL"
                )

        return self

    # Database
    DATABASE_URL: str  # Required in prod
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis: lock store, alert counters, rate limiting, celery broker
    REDIS_URL: Optional[str] = None

    # Upstash Redis: subscription view cache
    UPSTASH_REDIS_URL: Optional[str] = None
    UPSTASH_REDIS_TOKEN: Optional[str] = None
    SUBSCRIPTION_CACHE_TTL_MINUTES: int = 30

    # Razorpay
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    BILLING_CURRENCY: str = "INR"

    # Gateway call bounds
    GATEWAY_TIMEOUT_SECONDS: float = 20.0  # Whole call including retries
    GATEWAY_REQUEST_TIMEOUT_SECONDS: float = 8.0  # Single HTTP attempt
    GATEWAY_MAX_ATTEMPTS: int = 3  # Idempotent reads
    GATEWAY_CREATE_MAX_ATTEMPTS: int = 2

    # Pricing (INR)
    PRICE_PER_DOCTOR: str = "5999"
    YEARLY_DISCOUNT_PERCENT: str = "20"
    PLATFORM_FEE_PERCENT: str = "2"
    GST_PERCENT: str = "18"
    FEE_BASIS: str = "pre_credit"  # pre_credit, post_credit
    MIN_DOCTORS: int = 1
    MAX_DOCTORS: int = 1000

    # Distributed locks
    LOCK_TTL_SECONDS: int = 60
    LOCK_ACQUIRE_WAIT_SECONDS: float = 0.0
    LOCK_ORPHAN_AFTER_SECONDS: int = 55
    LOCK_DB_MARGIN_SECONDS: float = 10.0  # Queries and commit around the gateway calls

    # Reconciliation
    RENEWAL_STALENESS_MINUTES: int = 30
    RECONCILIATION_INTERVAL_MINUTES: int = 5
    RECONCILIATION_TRANSACTION_TIMEOUT_SECONDS: float = 90.0
    RECONCILIATION_BATCH_SIZE: int = 100
    HEALTH_CHECK_INTERVAL_MINUTES: int = 60
    EXPIRY_CHECK_HOUR: int = 0
    EXPIRY_WARNING_HOUR: int = 9
    SUBSCRIPTION_EXPIRY_WARNING_DAYS: int = 7

    # Alert thresholds
    ALERT_WINDOW_SECONDS: int = 3600
    ALERT_FAILED_PAYMENTS_THRESHOLD: int = 5
    ALERT_CONSECUTIVE_TIMEOUTS_THRESHOLD: int = 3
    ALERT_DUPLICATE_ATTEMPTS_THRESHOLD: int = 10

    # Rate limits
    RENEWAL_RATE_LIMIT: str = "5/minute"
    VERIFICATION_RATE_LIMIT: str = "10/minute"

    # Notifications
    SUPER_ADMIN_EMAIL: Optional[str] = None
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "billing@medora.health"
    SLACK_BOT_TOKEN: Optional[str] = None
    SLACK_CHANNEL_ID: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def longest_locked_operation_seconds(self) -> float:
        return LOCKED_GATEWAY_CALLS * self.GATEWAY_TIMEOUT_SECONDS + self.LOCK_DB_MARGIN_SECONDS

    @property
    def gateway_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)


@lru_cache
def get_settings() -> Settings:
    """Returns a cached instance of the settings."""
    return Settings()
