import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

# Accepted OTP code lengths; codes outside this range can never verify
MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 12


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # OTP lifecycle
    OTP_MODE: str = "twilio"  # twilio | fixed
    OTP_CODE_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 600
    OTP_RATE_LIMIT_MAX: int = 5
    OTP_RATE_LIMIT_WINDOW_SECONDS: int = 600
    OTP_MAX_VERIFY_ATTEMPTS: int = 5
    OTP_MAX_RESENDS: int = 3
    OTP_FIXED_CODE: Optional[str] = None  # only honoured when OTP_MODE=fixed
    OTP_CHANNEL: str = "sms"  # sms | whatsapp
    OTP_TRANSPORT_TIMEOUT_SECONDS: float = 5.0

    # Twilio messaging transport
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM_NUMBER: Optional[str] = None
    TWILIO_WHATSAPP_FROM: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_ELEVATED_PRICE_ID: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    BILLING_REJECT_STALE_EVENTS: bool = False

    # Sessions
    SESSION_SECRET: Optional[str] = None
    SESSION_TTL_MINUTES: int = 60 * 24 * 7

    # Scheduled jobs
    CRON_SECRET: Optional[str] = None

    # Analytics
    ANALYTICS_ENABLED: bool = True

    # App URLs
    APP_BASE_URL: str = "http://localhost:3000"

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
    log = logger or logging.getLogger("contractor_core")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "SESSION_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_ELEVATED_PRICE_ID",
        "CRON_SECRET",
    ]
    if cfg.OTP_MODE == "twilio":
        required_keys += ["TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN"]

    problems = []
    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    if not MIN_CODE_LENGTH <= cfg.OTP_CODE_LENGTH <= MAX_CODE_LENGTH:
        problems.append(f"OTP_CODE_LENGTH must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
    if cfg.OTP_MODE not in ("twilio", "fixed"):
        problems.append(f"Unknown OTP_MODE: {cfg.OTP_MODE}")
    if cfg.OTP_MODE == "fixed":
        if cfg.ENV.lower() == "production":
            problems.append("OTP_MODE=fixed is not allowed in production")
        if not cfg.OTP_FIXED_CODE:
            problems.append("OTP_MODE=fixed requires OTP_FIXED_CODE")
        elif not (
            MIN_CODE_LENGTH <= len(cfg.OTP_FIXED_CODE) <= MAX_CODE_LENGTH
            and cfg.OTP_FIXED_CODE.isascii()
            and cfg.OTP_FIXED_CODE.isdigit()
        ):
            problems.append(f"OTP_FIXED_CODE must be {MIN_CODE_LENGTH}-{MAX_CODE_LENGTH} digits")

    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    # Sweep deletes rows past expiry; the rate-limit window counts rows.
    if cfg.OTP_RATE_LIMIT_WINDOW_SECONDS > cfg.OTP_TTL_SECONDS:
        log.warning("OTP_RATE_LIMIT_WINDOW_SECONDS exceeds OTP_TTL_SECONDS; swept challenges no longer count toward the limit")

    return True
