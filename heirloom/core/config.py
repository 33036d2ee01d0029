import logging
import os

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

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PERSONAL: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None
    STRIPE_PRICE_ULTIMATE: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    # Auth
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHMS: str = "HS256"  # comma-separated
    ALLOW_USER_ID_HEADER: bool = True  # X-User-Id fallback for dev/tests

    # Quota seeding: rewrite existing quota rows with defaults on startup
    QUOTA_SEED_OVERWRITE: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def get_setting(key: str) -> Optional[str]:
    """Read a value from the process environment first, then from settings.

    A non-empty environment value wins; an unset or empty one falls back to
    the value `settings` captured at import, so clearing a key means clearing
    both.
    """
    value = os.getenv(key)
    if value:
        return value
    return getattr(settings, key, None)


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("heirloom")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_PERSONAL",
        "STRIPE_PRICE_PREMIUM",
        "STRIPE_PRICE_ULTIMATE",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
