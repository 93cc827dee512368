"""
licensing/features/verification/service.py

Verification service (request-handling core).

Handles:
- verify: cache lookup -> provider lookup -> negative, each step tagged so
  "not entitled" is never confused with "could not determine"
- revalidate: token authenticity first, then a live revocation check with an
  availability bias for monthly plans
- gift codes: delegated to GiftCodeService, same credential path
"""

from dataclasses import dataclass
from typing import Optional

from licensing.core.errors import UpstreamUnavailableError
from licensing.core.logging import log_event
from licensing.core.metrics import cache_write_failures_total, verification_total
from licensing.features.billing.provider import BillingProvider, BillingUnavailableError
from licensing.features.credentials.signer import ActivationSigner
from licensing.features.entitlements.cache import EntitlementCache
from licensing.features.entitlements.models import (
    LookupStatus,
    Plan,
    StoreUnavailableError,
    normalize_identifier,
)
from licensing.features.gift_codes.service import GiftCodeResult, GiftCodeService


NO_PURCHASE = "No active purchase found for this email"
INVALID_TOKEN = "Invalid token"
REVOKED = "Subscription is no longer active"


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    plan: Optional[Plan] = None
    token: Optional[str] = None
    error: Optional[str] = None

    def to_payload(self) -> dict:
        payload: dict = {"valid": self.valid}
        if self.plan is not None:
            payload["plan"] = self.plan.value
        if self.token is not None:
            payload["token"] = self.token
        if self.error is not None:
            payload["error"] = self.error
        return payload


class VerificationService:
    def __init__(
        self,
        cache: EntitlementCache,
        provider: BillingProvider,
        signer: ActivationSigner,
        gift_codes: Optional[GiftCodeService] = None,
    ):
        self.cache = cache
        self.provider = provider
        self.signer = signer
        self.gift_codes = gift_codes

    def _grant(self, identifier: str, plan: Plan, outcome: str) -> VerificationResult:
        verification_total.inc({"operation": "verify", "outcome": outcome})
        return VerificationResult(valid=True, plan=plan, token=self.signer.sign(identifier, plan.value))

    def _deny(self, operation: str, outcome: str, error: Optional[str] = None) -> VerificationResult:
        verification_total.inc({"operation": operation, "outcome": outcome})
        return VerificationResult(valid=False, error=error)

    def verify(self, identifier: str) -> VerificationResult:
        """Resolve an identifier to a signed credential.

        Raises UpstreamUnavailableError when the cache cannot answer and the
        billing provider cannot be reached either.
        """
        email = normalize_identifier(identifier)
        lookup = self.cache.lookup(email)

        if lookup.status == LookupStatus.HIT:
            record = lookup.record
            if record.is_active:
                return self._grant(email, record.plan, "cache_hit")
            # Push-confirmed revocation is authoritative; the provider is not asked.
            log_event("info", "verify.revoked", identifier=email, plan=record.plan.value)
            return self._deny("verify", "revoked", REVOKED)

        try:
            plan = self.provider.find_plan(email)
        except BillingUnavailableError as exc:
            verification_total.inc({"operation": "verify", "outcome": "unavailable"})
            log_event(
                "error",
                "verify.provider_unavailable",
                identifier=email,
                error_code="upstream_unavailable",
                extra={"cache": lookup.status.value, "detail": exc},
            )
            raise UpstreamUnavailableError(
                "Could not verify purchase right now, please try again",
                extra={"valid": False},
            ) from exc

        if plan is None:
            return self._deny("verify", "not_found", NO_PURCHASE)

        try:
            record = self.cache.activate(email, plan)
        except StoreUnavailableError as exc:
            cache_write_failures_total.inc({"path": "verify"})
            log_event("warning", "verify.cache_write_failed", identifier=email, plan=plan.value, error_code="store_unavailable", extra={"detail": exc})
            return self._grant(email, plan, "provider")

        if not record.is_active:
            # A revocation landed between our read and write.
            return self._deny("verify", "revoked", REVOKED)
        return self._grant(email, record.plan, "provider")

    def revalidate(self, identifier: str, plan: str, token: str) -> VerificationResult:
        email = normalize_identifier(identifier)
        if not self.signer.verify(email, plan, token):
            log_event("warning", "revalidate.invalid_token", identifier=email, plan=plan, error_code="invalid_signature")
            return self._deny("revalidate", "invalid_token", INVALID_TOKEN)

        if plan == Plan.LIFETIME.value:
            verification_total.inc({"operation": "revalidate", "outcome": "lifetime"})
            return VerificationResult(valid=True)

        if plan != Plan.MONTHLY.value:
            return self._deny("revalidate", "unknown_plan", INVALID_TOKEN)

        lookup = self.cache.lookup(email)
        if lookup.status == LookupStatus.HIT and not lookup.record.is_active:
            return self._deny("revalidate", "revoked", REVOKED)
        if lookup.status == LookupStatus.UNAVAILABLE:
            log_event("warning", "revalidate.assumed_valid", identifier=email, plan=plan, error_code="store_unavailable")
            verification_total.inc({"operation": "revalidate", "outcome": "assumed_valid"})
            return VerificationResult(valid=True)

        verification_total.inc({"operation": "revalidate", "outcome": "confirmed"})
        return VerificationResult(valid=True)

    def validate_gift_code(self, code: str) -> GiftCodeResult:
        if self.gift_codes is None:
            raise RuntimeError("gift code validation is not configured")
        return self.gift_codes.validate(code)
