"""
Service wiring.

Configuration is read once here and passed into constructors; business logic
never reads the environment itself.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from redis import Redis
from starlette.requests import Request

from licensing.core.config import ConfigurationError, Settings, load_activation_secret
from licensing.core.ratelimit import RateLimiter, RedisSlidingWindowLimiter, SlidingWindowLimiter
from licensing.features.billing.plans import PriceCatalog
from licensing.features.billing.provider import BillingProvider, BillingProviderError
from licensing.features.billing.stripe_provider import StripeProvider
from licensing.features.billing.webhooks import WebhookProcessor
from licensing.features.credentials.signer import ActivationSigner
from licensing.features.entitlements.cache import (
    EntitlementCache,
    EntitlementStore,
    InMemoryEntitlementStore,
    RedisEntitlementStore,
)
from licensing.features.gift_codes.models import LEGACY_FALLBACK_HASHES, parse_fallback_hashes
from licensing.features.gift_codes.service import GiftCodeService
from licensing.features.gift_codes.store import GiftCodeStore, InMemoryGiftCodeStore, RedisGiftCodeStore
from licensing.features.verification.service import VerificationService


logger = logging.getLogger("licensing")


@dataclass
class LicensingServices:
    verification: VerificationService
    webhooks: WebhookProcessor
    cache: EntitlementCache
    gift_limiter: RateLimiter


def catalog_from_settings(cfg: Settings) -> PriceCatalog:
    return PriceCatalog(
        monthly_price_id=cfg.STRIPE_MONTHLY_PRICE_ID,
        lifetime_price_id=cfg.STRIPE_LIFETIME_PRICE_ID,
    )


def build_redis_client(cfg: Settings) -> Redis:
    return Redis.from_url(
        cfg.REDIS_URL,
        socket_timeout=cfg.STORE_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=cfg.STORE_SOCKET_TIMEOUT_SECONDS,
        decode_responses=True,
    )


def build_services(
    cfg: Settings,
    *,
    provider: Optional[BillingProvider] = None,
    entitlement_store: Optional[EntitlementStore] = None,
    gift_store: Optional[GiftCodeStore] = None,
    gift_limiter: Optional[RateLimiter] = None,
) -> LicensingServices:
    """Assemble the service graph. Raises ConfigurationError without a signing secret or billing key."""
    signer = ActivationSigner(load_activation_secret(cfg, logger))
    catalog = catalog_from_settings(cfg)

    redis_client = None
    if cfg.STORE_BACKEND == "redis" and (entitlement_store is None or gift_store is None or gift_limiter is None):
        redis_client = build_redis_client(cfg)

    if entitlement_store is None:
        entitlement_store = RedisEntitlementStore(redis_client) if redis_client else InMemoryEntitlementStore()
    if gift_store is None:
        gift_store = RedisGiftCodeStore(redis_client) if redis_client else InMemoryGiftCodeStore()
    if gift_limiter is None:
        if redis_client:
            gift_limiter = RedisSlidingWindowLimiter(
                redis_client, cfg.GIFT_CODE_RATE_LIMIT, cfg.GIFT_CODE_RATE_WINDOW_SECONDS
            )
        else:
            gift_limiter = SlidingWindowLimiter(cfg.GIFT_CODE_RATE_LIMIT, cfg.GIFT_CODE_RATE_WINDOW_SECONDS)

    if provider is None:
        try:
            provider = StripeProvider(
                cfg.STRIPE_SECRET_KEY,
                cfg.STRIPE_WEBHOOK_SECRET,
                catalog,
                timeout_seconds=cfg.STRIPE_TIMEOUT_SECONDS,
            )
        except BillingProviderError as exc:
            raise ConfigurationError(str(exc)) from exc

    fallback_raw = cfg.GIFT_CODE_HASHES or ",".join(LEGACY_FALLBACK_HASHES)
    cache = EntitlementCache(entitlement_store)
    gift_codes = GiftCodeService(gift_store, signer, fallback=parse_fallback_hashes(fallback_raw))

    logger.info(
        "services.ready",
        extra={"status": f"store={cfg.STORE_BACKEND}"},
    )
    return LicensingServices(
        verification=VerificationService(cache, provider, signer, gift_codes),
        webhooks=WebhookProcessor(provider, cache, catalog),
        cache=cache,
        gift_limiter=gift_limiter,
    )


def get_services(request: Request) -> LicensingServices:
    """FastAPI dependency: the service graph built at startup."""
    return request.app.state.services
