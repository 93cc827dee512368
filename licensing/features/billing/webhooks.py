"""
licensing/features/billing/webhooks.py

Push ingestion: billing-provider change events upsert the entitlement cache.

Every action is an idempotent set-operation on the EntitlementRecord, so a
redelivered event leaves the same state behind. Store or provider failures
are surfaced as retryable (500) so the provider redelivers.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from licensing.core.errors import AppError, AuthenticityError
from licensing.core.logging import log_event
from licensing.core.metrics import webhook_events_total
from licensing.features.billing.plans import PriceCatalog, resolve_plan
from licensing.features.billing.provider import (
    BillingProvider,
    BillingUnavailableError,
    BillingWebhookError,
)
from licensing.features.billing.stripe_provider import get_field, list_data, price_id_of
from licensing.features.entitlements.cache import EntitlementCache
from licensing.features.entitlements.models import Plan, StoreUnavailableError


logger = logging.getLogger(__name__)

ACTIVATED = "activated"
REVOKED = "revoked"
IGNORED = "ignored"
SKIPPED = "skipped"

INACTIVE_SUBSCRIPTION_STATUSES = ("canceled", "unpaid", "past_due")


class WebhookProcessingError(AppError):
    """The event was authentic but could not be applied. The provider should redeliver."""
    code = "webhook_retry"
    status_code = 500


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: Optional[str]
    event_type: str
    action: str
    identifier: Optional[str] = None
    plan: Optional[Plan] = None


class WebhookProcessor:
    def __init__(self, provider: BillingProvider, cache: EntitlementCache, catalog: PriceCatalog):
        self.provider = provider
        self.cache = cache
        self.catalog = catalog

    def ingest(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify the signature, then apply the event."""
        if not signature:
            raise AuthenticityError("Missing signature")
        try:
            event = self.provider.construct_event(payload, signature)
        except BillingWebhookError as exc:
            log_event("warning", "webhook.signature_rejected", error_code="invalid_signature", extra={"detail": exc})
            raise AuthenticityError("Webhook signature verification failed") from exc
        return self.process(event)

    def process(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_type = str(event.get("type") or "")
        event_id = event.get("id")
        obj = (event.get("data") or {}).get("object") or {}

        try:
            if event_type == "checkout.session.completed":
                outcome = self._checkout_completed(event_id, event_type, obj)
            elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
                outcome = self._subscription_changed(event_id, event_type, obj)
            elif event_type == "customer.subscription.deleted":
                outcome = self._subscription_deleted(event_id, event_type, obj)
            else:
                outcome = WebhookOutcome(event_id, event_type, IGNORED)
        except (StoreUnavailableError, BillingUnavailableError) as exc:
            log_event(
                "error",
                "webhook.processing_failed",
                event_type=event_type,
                error_code="webhook_retry",
                extra={"event_id": event_id, "detail": exc},
            )
            raise WebhookProcessingError("Internal error, event will be retried") from exc

        webhook_events_total.inc({"event_type": event_type, "action": outcome.action})
        log_event(
            "info",
            "webhook.processed",
            identifier=outcome.identifier,
            plan=outcome.plan.value if outcome.plan else None,
            event_type=event_type,
            extra={"event_id": event_id, "action": outcome.action},
        )
        return outcome

    def _activate(self, event_id, event_type, email, plan, *, clear_revocation=False) -> WebhookOutcome:
        record = self.cache.activate(email, plan, clear_revocation=clear_revocation)
        return WebhookOutcome(event_id, event_type, ACTIVATED, email, record.plan)

    def _checkout_completed(self, event_id, event_type, session) -> WebhookOutcome:
        details = get_field(session, "customer_details") or {}
        email = get_field(details, "email") or get_field(session, "customer_email")
        if not email:
            return WebhookOutcome(event_id, event_type, SKIPPED)
        email = email.strip().lower()

        plan = resolve_plan(self.provider.list_line_item_prices(get_field(session, "id")), self.catalog)
        if plan is None:
            return WebhookOutcome(event_id, event_type, SKIPPED, email)
        # A completed purchase is fresh proof and may lift an earlier revocation.
        return self._activate(event_id, event_type, email, plan, clear_revocation=True)

    def _subscription_changed(self, event_id, event_type, sub) -> WebhookOutcome:
        status = get_field(sub, "status")
        if event_type == "customer.subscription.created" and status != "active":
            return WebhookOutcome(event_id, event_type, SKIPPED)

        email = self.provider.get_customer_email(get_field(sub, "customer"))
        if not email:
            return WebhookOutcome(event_id, event_type, SKIPPED)

        if status == "active":
            price_ids = [price_id_of(item) for item in list_data(get_field(sub, "items"))]
            plan = resolve_plan(price_ids, self.catalog)
            if plan is None:
                return WebhookOutcome(event_id, event_type, SKIPPED, email)
            return self._activate(event_id, event_type, email, plan, clear_revocation=True)

        if status in INACTIVE_SUBSCRIPTION_STATUSES:
            return self._revoke(event_id, event_type, email)
        return WebhookOutcome(event_id, event_type, SKIPPED, email)

    def _subscription_deleted(self, event_id, event_type, sub) -> WebhookOutcome:
        email = self.provider.get_customer_email(get_field(sub, "customer"))
        if not email:
            return WebhookOutcome(event_id, event_type, SKIPPED)
        return self._revoke(event_id, event_type, email)

    def _revoke(self, event_id, event_type, email) -> WebhookOutcome:
        record = self.cache.revoke(email)
        if record is None:
            return WebhookOutcome(event_id, event_type, SKIPPED, email)
        if record.plan == Plan.LIFETIME:
            log_event("info", "entitlement.revoke_refused", identifier=email, plan=record.plan.value, event_type=event_type)
            return WebhookOutcome(event_id, event_type, SKIPPED, email, record.plan)
        return WebhookOutcome(event_id, event_type, REVOKED, email, record.plan)
