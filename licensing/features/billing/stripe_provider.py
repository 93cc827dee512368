"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and the read-only purchase lookup
used when the entitlement cache cannot answer.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import stripe

from licensing.features.billing.plans import PriceCatalog, resolve_plan
from licensing.features.billing.provider import (
    BillingProviderError,
    BillingUnavailableError,
    BillingWebhookError,
)
from licensing.features.entitlements.models import Plan


logger = logging.getLogger(__name__)


class _NotFound(Exception):
    pass


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a plain dict or a StripeObject."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, default)


def list_data(listing: Any) -> List[Any]:
    return list(get_field(listing, "data", None) or [])


def price_id_of(item: Any) -> Optional[str]:
    price = get_field(item, "price")
    if isinstance(price, str):
        return price
    return get_field(price, "id")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        catalog: PriceCatalog,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            catalog: monthly/lifetime price ids
            timeout_seconds: per-request network timeout
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.catalog = catalog

        stripe.api_key = self.secret_key
        if timeout_seconds:
            stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run an SDK call, mapping failures to not-found or unavailable."""
        try:
            return fn(*args, **kwargs)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise _NotFound(str(e)) from e
            raise BillingUnavailableError(f"Stripe rejected request: {e}") from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.AuthenticationError) as e:
            raise BillingUnavailableError(f"Stripe unavailable: {e}") from e
        except stripe.StripeError as e:
            raise BillingUnavailableError(f"Stripe API error: {e}") from e

    def find_plan(self, email: str) -> Optional[Plan]:
        """Collect price ids from every purchase signal for the email and resolve them."""
        price_ids: List[Optional[str]] = []
        declared: List[Optional[str]] = []

        for customer in self._find_customers(email):
            customer_id = get_field(customer, "id")
            if not customer_id:
                continue
            try:
                subscriptions = list_data(
                    self._call(stripe.Subscription.list, customer=customer_id, status="active", limit=10)
                )
                intents = list_data(self._call(stripe.PaymentIntent.list, customer=customer_id, limit=20))
            except _NotFound:
                continue
            for sub in subscriptions:
                price_ids.extend(price_id_of(item) for item in list_data(get_field(sub, "items")))
            for intent in intents:
                if get_field(intent, "status") == "succeeded":
                    declared.append(get_field(get_field(intent, "metadata") or {}, "plan"))

        if resolve_plan(price_ids, self.catalog, declared) == Plan.LIFETIME:
            return Plan.LIFETIME

        try:
            sessions = list_data(
                self._call(
                    stripe.checkout.Session.list,
                    customer_details={"email": email},
                    status="complete",
                    limit=50,
                )
            )
        except _NotFound:
            sessions = []

        # A completed session only proves a one-time purchase. Subscription
        # checkouts stay "complete" after cancellation, so monthly access
        # comes from active subscriptions alone.
        for session in sessions:
            if get_field(session, "mode") == "subscription":
                continue
            details = get_field(session, "customer_details") or {}
            session_email = (get_field(details, "email") or "").strip().lower()
            if session_email != email:
                continue
            price_ids.extend(
                pid
                for pid in self.list_line_item_prices(get_field(session, "id"))
                if pid == self.catalog.lifetime_price_id
            )

        return resolve_plan(price_ids, self.catalog, declared)

    def _find_customers(self, email: str) -> List[Any]:
        """Customers whose email matches case-insensitively.

        The list filter is an exact, case-sensitive match, so customers saved
        with mixed case are picked up through search.
        """
        found: Dict[str, Any] = {}
        try:
            for customer in list_data(self._call(stripe.Customer.list, email=email, limit=10)):
                found.setdefault(get_field(customer, "id"), customer)
        except _NotFound:
            pass

        escaped = email.replace("\\", "\\\\").replace("'", "\\'")
        try:
            matches = list_data(self._call(stripe.Customer.search, query=f"email:'{escaped}'", limit=10))
        except _NotFound:
            matches = []
        except BillingUnavailableError as e:
            # Search is not offered on every account; transport failures still propagate.
            if not isinstance(e.__cause__, stripe.InvalidRequestError):
                raise
            logger.warning("customer search rejected, using exact-match lookup only: %s", e)
            matches = []
        for customer in matches:
            if (get_field(customer, "email") or "").strip().lower() == email:
                found.setdefault(get_field(customer, "id"), customer)

        return [customer for customer_id, customer in found.items() if customer_id]

    def list_line_item_prices(self, session_id: str) -> List[str]:
        if not session_id:
            return []
        try:
            line_items = self._call(stripe.checkout.Session.list_line_items, session_id, limit=10)
        except _NotFound:
            return []
        return [pid for pid in (price_id_of(item) for item in list_data(line_items)) if pid]

    def get_customer_email(self, customer: Union[str, Dict[str, Any], None]) -> Optional[str]:
        if customer is None:
            return None
        if isinstance(customer, str):
            try:
                customer = self._call(stripe.Customer.retrieve, customer)
            except _NotFound:
                return None
        if get_field(customer, "deleted"):
            return None
        email = get_field(customer, "email")
        return email.strip().lower() if email else None

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify Stripe webhook signature and parse the event body."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e

        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        try:
            event = json.loads(text)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        if not isinstance(event, dict) or "type" not in event:
            raise BillingWebhookError("Invalid payload: not an event object")
        return event
