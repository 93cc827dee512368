"""
licensing/features/entitlements/models.py

Entitlement records and the tagged result of a cache lookup.

An EntitlementRecord is keyed by account identifier: a normalized email, or a
namespaced synthetic identifier such as ``gift:<sha256>``. Records are
serialized with the camelCase keys (plan, activatedAt, revokedAt) that the
key-value store has always held.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Plan(str, Enum):
    """Paid plans. LIFETIME is superior and irrevocable."""
    MONTHLY = "monthly"
    LIFETIME = "lifetime"


class StoreUnavailableError(Exception):
    """The key-value store could not be read or written. Never means "absent"."""


class EntitlementRecord(BaseModel):
    """Last known plan state for one account identifier."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    plan: Plan
    activated_at: datetime = Field(alias="activatedAt")
    revoked_at: Optional[datetime] = Field(default=None, alias="revokedAt")

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class LookupStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class CacheLookup:
    """Hit carries the record; Miss means definitely absent; Unavailable means unknown."""
    status: LookupStatus
    record: Optional[EntitlementRecord] = None

    @classmethod
    def hit(cls, record: EntitlementRecord) -> "CacheLookup":
        return cls(LookupStatus.HIT, record)

    @classmethod
    def miss(cls) -> "CacheLookup":
        return cls(LookupStatus.MISS)

    @classmethod
    def unavailable(cls) -> "CacheLookup":
        return cls(LookupStatus.UNAVAILABLE)


def normalize_identifier(value: str) -> str:
    """Trim and lowercase an account identifier."""
    return value.strip().lower()
