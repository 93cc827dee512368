"""
licensing/client/revalidation.py

Client revalidation policy.

Runs once per application start as a single awaited check (no background
timer). Absence of proof is not proof of absence: only a definitive server
answer deactivates a credential, never a network failure.

States:
- inactive: nothing to do
- expired: a time-boxed (beta/gift) activation passed its expiry, deactivated locally
- legacy: activated without a credential, silent upgrade via verify(email)
- recent: checked within the interval, treated as valid without a call
- stale: revalidate; confirmed / revoked / unreachable
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from licensing.client.storage import ActivationRecord, ActivationStore


logger = logging.getLogger("licensing.client")

REVALIDATION_INTERVAL = timedelta(hours=24)
DEFAULT_TIMEOUT_SECONDS = 8.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class LicenseServerUnreachable(Exception):
    """The server gave no verdict: transport failure, timeout, any non-2xx status or an unreadable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LicenseClient:
    """Async client for the licensing endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(path, json=body)
        except httpx.HTTPError as exc:
            raise LicenseServerUnreachable(str(exc)) from exc

        # 4xx from a proxy, a wrong base path or a rejected request is not a verdict either.
        if not response.is_success:
            raise LicenseServerUnreachable(f"{path} answered {response.status_code}", response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise LicenseServerUnreachable(f"{path} answered non-JSON") from exc
        if not isinstance(data, dict) or not isinstance(data.get("valid"), bool):
            raise LicenseServerUnreachable(f"{path} answered an unexpected body", response.status_code)
        return data

    async def verify(self, email: str) -> Dict[str, Any]:
        return await self._post("/verify", {"email": email.strip().lower()})

    async def revalidate(self, identifier: str, plan: str, token: str) -> Dict[str, Any]:
        return await self._post(
            "/verify",
            {"action": "revalidate", "email": identifier, "plan": plan, "token": token},
        )

    async def validate_gift_code(self, code: str) -> Dict[str, Any]:
        return await self._post("/validate-gift-code", {"code": code})


class RevalidationState(str, Enum):
    INACTIVE = "inactive"
    EXPIRED = "expired"
    UPGRADED = "upgraded"
    LEGACY_RETAINED = "legacy_retained"
    DEACTIVATED_NO_PROOF = "deactivated_no_proof"
    SKIPPED_RECENT = "skipped_recent"
    CONFIRMED = "confirmed"
    REVOKED = "revoked"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class RevalidationOutcome:
    state: RevalidationState
    record: ActivationRecord

    @property
    def activated(self) -> bool:
        return self.record.activated


class RevalidationPolicy:
    def __init__(
        self,
        store: ActivationStore,
        client: LicenseClient,
        *,
        interval: timedelta = REVALIDATION_INTERVAL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.client = client
        self.interval = interval
        self.clock = clock

    def _finish(self, state: RevalidationState, record: ActivationRecord, *, save: bool = False) -> RevalidationOutcome:
        if save:
            self.store.save(record)
        logger.info("revalidation.%s", state.value, extra={"plan": record.plan})
        return RevalidationOutcome(state, record)

    async def run(self) -> RevalidationOutcome:
        record = self.store.load()
        if not record.activated:
            return self._finish(RevalidationState.INACTIVE, record)

        now = self.clock()
        if record.beta_expires_at and now > _aware(record.beta_expires_at):
            return self._finish(RevalidationState.EXPIRED, record.model_copy(update={"activated": False}), save=True)

        if not record.has_credential or not record.plan:
            return await self._upgrade_legacy(record, now)

        if record.last_revalidated_at and now - _aware(record.last_revalidated_at) < self.interval:
            return self._finish(RevalidationState.SKIPPED_RECENT, record)

        try:
            data = await self.client.revalidate(record.identifier, record.plan, record.token)
        except LicenseServerUnreachable as exc:
            logger.warning("revalidation.unreachable: %s", exc)
            return self._finish(RevalidationState.UNREACHABLE, record)

        if data.get("valid") is True:
            return self._finish(
                RevalidationState.CONFIRMED,
                record.model_copy(update={"last_revalidated_at": now}),
                save=True,
            )

        revoked = record.model_copy(update={"activated": False, "token": None, "last_revalidated_at": None})
        return self._finish(RevalidationState.REVOKED, revoked, save=True)

    async def _upgrade_legacy(self, record: ActivationRecord, now: datetime) -> RevalidationOutcome:
        if record.email:
            try:
                data = await self.client.verify(record.email)
            except LicenseServerUnreachable as exc:
                logger.warning("revalidation.legacy_upgrade_unreachable: %s", exc)
                data = {}
            if data.get("valid") is True and data.get("token"):
                upgraded = record.model_copy(
                    update={
                        "token": data["token"],
                        "identifier": record.email.strip().lower(),
                        "plan": data.get("plan") or record.plan,
                        "last_revalidated_at": now,
                    }
                )
                return self._finish(RevalidationState.UPGRADED, upgraded, save=True)

        if not record.email and not record.is_beta_tester and not record.token:
            return self._finish(
                RevalidationState.DEACTIVATED_NO_PROOF,
                record.model_copy(update={"activated": False}),
                save=True,
            )
        return self._finish(RevalidationState.LEGACY_RETAINED, record)

    async def activate_with_email(self, email: str) -> Dict[str, Any]:
        """Verify a purchase and store the credential on success. Returns the server answer.

        Raises LicenseServerUnreachable when the server gives no verdict.
        """
        data = await self.client.verify(email)
        if data.get("valid") is True and data.get("token"):
            normalized = email.strip().lower()
            self.store.save(
                ActivationRecord(
                    activated=True,
                    email=normalized,
                    identifier=normalized,
                    plan=data.get("plan"),
                    token=data["token"],
                    activated_at=self.clock(),
                    last_revalidated_at=self.clock(),
                )
            )
        return data

    async def activate_with_gift_code(self, code: str) -> Dict[str, Any]:
        """Redeem a gift code; the activation is time-boxed when the code carries an expiry."""
        data = await self.client.validate_gift_code(code)
        if data.get("valid") is True and data.get("token") and data.get("identifier"):
            self.store.save(
                ActivationRecord(
                    activated=True,
                    identifier=data["identifier"],
                    plan=data.get("plan") or "lifetime",
                    token=data["token"],
                    activated_at=self.clock(),
                    is_beta_tester=True,
                    beta_expires_at=data.get("expiresAt"),
                    last_revalidated_at=self.clock(),
                )
            )
        return data
