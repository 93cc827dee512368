"""
Environment validation utilities.

Ensures the service fails fast on misconfiguration while
remaining bypassable for tests via SKIP_ENV_VALIDATION.
"""

import os
from typing import Optional, Iterable
from urllib.parse import urlparse

from licensing.core.config import settings


class EnvValidationError(RuntimeError):
    """Raised when environment validation fails."""


_STORE_BACKENDS = {"memory", "redis"}


def _is_valid_redis_url(url: str) -> bool:
    """Basic REDIS_URL validation using urlparse."""
    parsed = urlparse(url)
    return parsed.scheme in {"redis", "rediss", "unix"} and bool(parsed.netloc or parsed.path)


def _is_valid_origin(origin: str) -> bool:
    parsed = urlparse(origin)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc) and parsed.path in {"", "/"}


def _require(vars_required: Iterable[str], source: object) -> None:
    for var in vars_required:
        if not getattr(source, var, None):
            raise EnvValidationError(f"{var} is required in production")


def validate_env(env: Optional[str] = None, settings_obj=None) -> bool:
    """Validate environment configuration.

    Args:
        env: Override environment name (defaults to settings.ENV)
        settings_obj: Override settings object (defaults to licensing.core.config.settings)

    Returns:
        True if validation passes.

    Raises:
        EnvValidationError when a rule is violated.
    """
    if os.getenv("SKIP_ENV_VALIDATION") == "1":
        return True

    cfg = settings_obj or settings
    mode = (env or getattr(cfg, "ENV", "development") or "development").lower()

    backend = (getattr(cfg, "STORE_BACKEND", "memory") or "memory").lower()
    if backend not in _STORE_BACKENDS:
        raise EnvValidationError(f"STORE_BACKEND must be one of {sorted(_STORE_BACKENDS)}")

    redis_url = getattr(cfg, "REDIS_URL", None)
    if backend == "redis" and (not redis_url or not _is_valid_redis_url(redis_url)):
        raise EnvValidationError("REDIS_URL must be a valid URL (e.g. redis://host:6379/0)")

    origin = getattr(cfg, "ALLOWED_ORIGIN", None)
    if origin and origin != "*" and not _is_valid_origin(origin):
        raise EnvValidationError("ALLOWED_ORIGIN must be a bare origin (e.g. https://app.example.com)")

    monthly = getattr(cfg, "STRIPE_MONTHLY_PRICE_ID", None)
    lifetime = getattr(cfg, "STRIPE_LIFETIME_PRICE_ID", None)
    if monthly and lifetime and monthly == lifetime:
        raise EnvValidationError("STRIPE_MONTHLY_PRICE_ID and STRIPE_LIFETIME_PRICE_ID must differ")

    required_prod = [
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_MONTHLY_PRICE_ID",
        "STRIPE_LIFETIME_PRICE_ID",
    ]

    if mode == "production":
        _require(required_prod, cfg)
        if origin == "*":
            raise EnvValidationError("ALLOWED_ORIGIN must not be a wildcard in production")
        if backend != "redis":
            raise EnvValidationError("STORE_BACKEND=redis is required in production")

    return True
