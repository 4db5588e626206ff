import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Public URL used to build default checkout/portal redirects
    API_BASE_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: Optional[str] = None
    STRIPE_MAX_NETWORK_RETRIES: int = 0  # retry policy belongs to callers

    # Stripe price ids per plan and billing interval
    STRIPE_PRICE_STARTER_MONTHLY: Optional[str] = None
    STRIPE_PRICE_STARTER_YEARLY: Optional[str] = None
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_YEARLY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE_YEARLY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


# Checked at startup; billing stays disabled while the Stripe keys are missing
BILLING_KEYS = ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def missing_billing_keys(cfg) -> List[str]:
    return [key for key in BILLING_KEYS if not getattr(cfg, key, None)]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None) -> List[str]:
    """Report missing billing configuration by key name only.

    Strict mode (CONFIG_STRICT) refuses to start; otherwise a warning is logged
    and the missing keys are returned.
    """
    cfg = settings_obj or settings
    strict_mode = getattr(cfg, "CONFIG_STRICT", False) if strict is None else strict
    missing = missing_billing_keys(cfg)
    if not missing:
        return []
    message = f"Missing configuration: {', '.join(missing)}"
    if strict_mode:
        raise RuntimeError(message)
    logging.getLogger("plangate").warning(message)
    return missing
