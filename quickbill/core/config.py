import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Cloud database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Auth (HS256 shared secret for Bearer tokens)
    AUTH_JWT_SECRET: Optional[str] = None

    # On-device key/value store
    LOCAL_STORE_PATH: str = "~/.quickbill/local_store.json"

    # Quota
    MAX_FREE_INVOICES: int = 3
    QUOTA_CAS_MAX_ATTEMPTS: int = 5

    # Payment provider
    PAYMENT_PROVIDER_TIMEOUT_SECONDS: float = 5.0
    PAST_DUE_GRACE_DAYS: int = 7
    PAST_DUE_RECHECK_LEAD_HOURS: int = 24

    # Migration
    MIGRATION_NOTICE_THRESHOLD: int = 3

    # App URLs
    BACKEND_URL: str = "http://localhost:8000"

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
    log = logger or logging.getLogger("quickbill")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.MAX_FREE_INVOICES < 0:
        message = "MAX_FREE_INVOICES must be non-negative"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
