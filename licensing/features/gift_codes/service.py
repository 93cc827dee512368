"""
licensing/features/gift_codes/service.py

Gift code validation.

The submitted code is hashed and matched against stored records, skipping
revoked and expired ones. The legacy fallback list is consulted only when the
store cannot be read. A match is minted a lifetime credential for the
synthetic identifier ``gift:<hash>``; the billing provider is never involved.
"""

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from licensing.core.logging import log_event
from licensing.core.metrics import verification_total
from licensing.features.credentials.signer import ActivationSigner
from licensing.features.entitlements.models import Plan, StoreUnavailableError
from licensing.features.gift_codes.models import (
    GiftCodeRecord,
    gift_identifier,
    hash_code,
)
from licensing.features.gift_codes.store import GiftCodeStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GiftCodeResult:
    valid: bool
    identifier: Optional[str] = None
    plan: Optional[Plan] = None
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_payload(self) -> dict:
        if not self.valid:
            return {"valid": False, "error": self.error or "Invalid promo code"}
        return {
            "valid": True,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "token": self.token,
            "identifier": self.identifier,
            "plan": self.plan.value if self.plan else None,
        }


class GiftCodeService:
    def __init__(
        self,
        store: GiftCodeStore,
        signer: ActivationSigner,
        fallback: Iterable[GiftCodeRecord] = (),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.signer = signer
        self.fallback: List[GiftCodeRecord] = list(fallback)
        self.clock = clock

    def _match(self, code_hash: str, records: Iterable[GiftCodeRecord]) -> Optional[GiftCodeRecord]:
        now = self.clock()
        for record in records:
            if hmac.compare_digest(record.hash, code_hash) and record.is_usable(now):
                return record
        return None

    def validate(self, code: str) -> GiftCodeResult:
        code_hash = hash_code(code)
        source = "store"
        try:
            records = self.store.list_records()
        except StoreUnavailableError as exc:
            log_event("warning", "gift_code.store_unavailable", error_code="store_unavailable", extra={"detail": exc})
            records = self.fallback
            source = "fallback"

        match = self._match(code_hash, records)
        if match is None:
            verification_total.inc({"operation": "gift_code", "outcome": "invalid"})
            return GiftCodeResult(valid=False, error="Invalid promo code")

        identifier = gift_identifier(code_hash)
        token = self.signer.sign(identifier, Plan.LIFETIME.value)
        verification_total.inc({"operation": "gift_code", "outcome": "valid"})
        log_event("info", "gift_code.accepted", identifier=identifier, plan=Plan.LIFETIME.value, extra={"source": source})
        return GiftCodeResult(
            valid=True,
            identifier=identifier,
            plan=Plan.LIFETIME,
            token=token,
            expires_at=match.expires_at,
        )
