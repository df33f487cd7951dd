import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Clerk (identity provider)
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_API_BASE: str = "https://api.clerk.com/v1"
    CLERK_ISSUER: Optional[str] = None  # e.g. https://your-instance.clerk.accounts.dev
    CLERK_AUDIENCE: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None

    # Stripe (payment provider)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_LIFETIME: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Outbound calls to Stripe / Clerk; no retries inside a handler
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # App URLs
    FRONTEND_URL: str = "http://localhost:5173"

    # Quotas (sliding window, per qualifier)
    QUOTA_PUBLIC_READ_MAX_CALLS: int = 40
    QUOTA_PUBLIC_READ_PERIOD_SECONDS: int = 60
    QUOTA_MEMBER_READ_MAX_CALLS: int = 40
    QUOTA_MEMBER_READ_PERIOD_SECONDS: int = 60
    QUOTA_ACTIVITY_LOG_MAX_CALLS: int = 120
    QUOTA_ACTIVITY_LOG_PERIOD_SECONDS: int = 60
    QUOTA_BILLING_WRITE_MAX_CALLS: int = 10
    QUOTA_BILLING_WRITE_PERIOD_SECONDS: int = 60

    # Error log
    ERROR_LOG_DEDUPE_WINDOW_SECONDS: int = 3600

    # Webhook event ids are kept this long for duplicate detection
    WEBHOOK_EVENT_TTL_DAYS: int = 30

    # Expiry sweep (daily)
    EXPIRY_SWEEP_HOUR: int = 0
    EXPIRY_SWEEP_MINUTE: int = 0
    EXPIRY_SWEEP_TIMEZONE: str = "America/Los_Angeles"

    # Admin access (hybrid auth)
    ADMIN_KEY: Optional[str] = None  # Legacy key
    ADMIN_AUTH_MODE: str = "hybrid"  # "clerk" | "legacy" | "hybrid"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("promember")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "CLERK_SECRET_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_MONTHLY",
        "STRIPE_PRICE_LIFETIME",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
