"""
licensing/features/entitlements/cache.py

Entitlement cache: read-modify-write over a key-value store.

Handles:
- Tagged lookups (hit / miss / unavailable), never "absent" on store failure
- Monotonic activation: a lifetime record is never downgraded or revoked
- Revocation is never cleared implicitly, only by an explicit purchase event
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from licensing.core.logging import log_event
from licensing.features.entitlements.models import (
    CacheLookup,
    EntitlementRecord,
    Plan,
    StoreUnavailableError,
    normalize_identifier,
)


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStore(Protocol):
    """Single-key atomic get/put. Raises StoreUnavailableError on backend failure."""

    def get(self, identifier: str) -> Optional[EntitlementRecord]:
        ...

    def put(self, identifier: str, record: EntitlementRecord) -> None:
        ...

    def ping(self) -> bool:
        ...


class InMemoryEntitlementStore:
    """Process-local store for development and tests."""

    def __init__(self):
        self._records: Dict[str, EntitlementRecord] = {}
        self._lock = threading.Lock()
        self.available = True

    def _check(self):
        if not self.available:
            raise StoreUnavailableError("in-memory store marked unavailable")

    def get(self, identifier: str) -> Optional[EntitlementRecord]:
        self._check()
        with self._lock:
            return self._records.get(identifier)

    def put(self, identifier: str, record: EntitlementRecord) -> None:
        self._check()
        with self._lock:
            self._records[identifier] = record

    def ping(self) -> bool:
        return self.available

    def __len__(self) -> int:
        return len(self._records)


class RedisEntitlementStore:
    """Records stored as JSON strings under ``licenses:<identifier>``."""

    def __init__(self, client: Redis, prefix: str = "licenses:"):
        self.client = client
        self.prefix = prefix

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}{identifier}"

    def get(self, identifier: str) -> Optional[EntitlementRecord]:
        try:
            raw = self.client.get(self._key(identifier))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if raw is None:
            return None
        try:
            return EntitlementRecord.model_validate_json(raw)
        except ValidationError as exc:
            # An unreadable record is not proof of absence.
            raise StoreUnavailableError(f"corrupt entitlement record: {exc.error_count()} errors") from exc

    def put(self, identifier: str, record: EntitlementRecord) -> None:
        try:
            self.client.set(self._key(identifier), record.to_json())
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False


class EntitlementCache:
    """Entitlement reads and monotonic writes keyed by normalized identifier."""

    def __init__(self, store: EntitlementStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    def lookup(self, identifier: str) -> CacheLookup:
        key = normalize_identifier(identifier)
        try:
            record = self.store.get(key)
        except StoreUnavailableError as exc:
            log_event(
                "warning",
                "entitlement.lookup_unavailable",
                identifier=key,
                error_code="store_unavailable",
                extra={"detail": exc},
            )
            return CacheLookup.unavailable()
        if record is None:
            return CacheLookup.miss()
        return CacheLookup.hit(record)

    def activate(self, identifier: str, plan: Plan, *, clear_revocation: bool = False) -> EntitlementRecord:
        """Record an active plan.

        - An existing lifetime record is returned unchanged.
        - A revoked record stays revoked unless ``clear_revocation`` is set
          (a fresh purchase event is the only thing allowed to set it).
        - ``activated_at`` is kept from the existing record.

        Raises StoreUnavailableError when the store cannot be read or written.
        """
        key = normalize_identifier(identifier)
        existing = self.store.get(key)

        if existing is not None:
            if existing.plan == Plan.LIFETIME:
                return existing
            if not existing.is_active and not clear_revocation:
                return existing

        record = EntitlementRecord(
            plan=plan,
            activated_at=existing.activated_at if existing else self.clock(),
            revoked_at=None,
        )
        if record != existing:
            self.store.put(key, record)
            log_event("info", "entitlement.activated", identifier=key, plan=plan.value)
        return record

    def revoke(self, identifier: str) -> Optional[EntitlementRecord]:
        """Mark a monthly record revoked. Lifetime, absent and already-revoked records are left alone.

        Raises StoreUnavailableError when the store cannot be read or written.
        """
        key = normalize_identifier(identifier)
        existing = self.store.get(key)
        if existing is None or existing.plan == Plan.LIFETIME or not existing.is_active:
            return existing

        record = existing.model_copy(update={"revoked_at": self.clock()})
        self.store.put(key, record)
        log_event("info", "entitlement.revoked", identifier=key, plan=existing.plan.value)
        return record

    def ping(self) -> bool:
        return self.store.ping()
