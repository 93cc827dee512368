import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_MONTHLY_PRICE_ID: Optional[str] = None
    STRIPE_LIFETIME_PRICE_ID: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0

    # Activation credentials
    ACTIVATION_SECRET: Optional[str] = None
    ALLOW_BILLING_SECRET_FALLBACK: bool = False  # opt-in only, see load_activation_secret

    # CORS (single origin, the PWA host)
    ALLOWED_ORIGIN: str = "http://localhost:5173"

    # Key-value store
    STORE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    STORE_SOCKET_TIMEOUT_SECONDS: float = 2.0

    # Gift codes
    GIFT_CODE_HASHES: Optional[str] = None  # "hash" or "hash:2026-12-31", comma-separated
    GIFT_CODE_RATE_LIMIT: int = 5
    GIFT_CODE_RATE_WINDOW_SECONDS: int = 60

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


class ConfigurationError(RuntimeError):
    """Raised when the process cannot start with the given configuration."""


def load_activation_secret(settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> str:
    """Return the secret used to sign activation credentials.

    ACTIVATION_SECRET is required. The billing key is only accepted when
    ALLOW_BILLING_SECRET_FALLBACK is set, and a warning is emitted every time
    the fallback is taken.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("licensing")

    if cfg.ACTIVATION_SECRET:
        return cfg.ACTIVATION_SECRET

    if cfg.ALLOW_BILLING_SECRET_FALLBACK and cfg.STRIPE_SECRET_KEY:
        log.warning("ACTIVATION_SECRET not set, signing activation credentials with STRIPE_SECRET_KEY")
        return cfg.STRIPE_SECRET_KEY

    raise ConfigurationError(
        "ACTIVATION_SECRET is required (set ALLOW_BILLING_SECRET_FALLBACK=true to sign with STRIPE_SECRET_KEY)"
    )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("licensing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_MONTHLY_PRICE_ID",
        "STRIPE_LIFETIME_PRICE_ID",
        "ACTIVATION_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
