# licensing/conftest.py
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from licensing.core.config import Settings
from licensing.core.container import LicensingServices
from licensing.core.metrics import METRICS
from licensing.core.ratelimit import SlidingWindowLimiter
from licensing.features.billing.plans import PriceCatalog
from licensing.features.billing.provider import BillingUnavailableError, BillingWebhookError
from licensing.features.billing.webhooks import WebhookProcessor
from licensing.features.credentials.signer import ActivationSigner
from licensing.features.entitlements.cache import EntitlementCache, InMemoryEntitlementStore
from licensing.features.entitlements.models import Plan
from licensing.features.gift_codes.models import LEGACY_FALLBACK_HASHES, parse_fallback_hashes
from licensing.features.gift_codes.service import GiftCodeService
from licensing.features.gift_codes.store import InMemoryGiftCodeStore
from licensing.features.verification.service import VerificationService
from licensing.main import create_app


TEST_SECRET = "test-activation-secret"
VALID_SIGNATURE = "t=1,v1=valid"


class FakeBillingProvider:
    """In-memory BillingProvider. Set ``unavailable`` to simulate a provider outage."""

    def __init__(self):
        self.plans: Dict[str, Plan] = {}
        self.customers: Dict[str, Optional[str]] = {}
        self.line_items: Dict[str, List[str]] = {}
        self.unavailable = False
        self.find_plan_calls: List[str] = []

    def _check(self):
        if self.unavailable:
            raise BillingUnavailableError("provider down")

    def find_plan(self, email: str) -> Optional[Plan]:
        self.find_plan_calls.append(email)
        self._check()
        return self.plans.get(email)

    def construct_event(self, payload: bytes, signature: str):
        if signature != VALID_SIGNATURE:
            raise BillingWebhookError("Invalid signature")
        return json.loads(payload)

    def get_customer_email(self, customer):
        self._check()
        if isinstance(customer, dict):
            if customer.get("deleted"):
                return None
            return (customer.get("email") or "").lower() or None
        return self.customers.get(customer)

    def list_line_item_prices(self, session_id: str) -> List[str]:
        self._check()
        return list(self.line_items.get(session_id, []))


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def signer():
    return ActivationSigner(TEST_SECRET)


@pytest.fixture
def catalog():
    return PriceCatalog(monthly_price_id="price_monthly", lifetime_price_id="price_lifetime")


@pytest.fixture
def entitlement_store():
    return InMemoryEntitlementStore()


@pytest.fixture
def cache(entitlement_store):
    return EntitlementCache(entitlement_store)


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def gift_store():
    return InMemoryGiftCodeStore()


@pytest.fixture
def gift_service(gift_store, signer):
    return GiftCodeService(gift_store, signer, fallback=parse_fallback_hashes(",".join(LEGACY_FALLBACK_HASHES)))


@pytest.fixture
def verification_service(cache, provider, signer, gift_service):
    return VerificationService(cache, provider, signer, gift_service)


@pytest.fixture
def webhook_processor(provider, cache, catalog):
    return WebhookProcessor(provider, cache, catalog)


@pytest.fixture
def services(verification_service, webhook_processor, cache):
    return LicensingServices(
        verification=verification_service,
        webhooks=webhook_processor,
        cache=cache,
        gift_limiter=SlidingWindowLimiter(5, 60),
    )


@pytest.fixture
def client(services):
    cfg = Settings(_env_file=None, ENV="test", ALLOWED_ORIGIN="http://localhost:5173")
    return TestClient(create_app(services=services, settings_obj=cfg))


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


@pytest.fixture
def post_event(client):
    """Deliver a signed webhook event through the HTTP surface."""

    def _post(event_type: str, obj: dict, event_id: str = "evt_1", signature: str = VALID_SIGNATURE):
        return client.post(
            "/billing-webhook",
            content=make_event(event_type, obj, event_id),
            headers={"stripe-signature": signature, "content-type": "application/json"},
        )

    return _post


@pytest.fixture
def valid_signature():
    return VALID_SIGNATURE
