"""
Gift code storage.

Records live under ``gift-codes:<id>``. Validation only reads; records are
written by the administrative flow (and by tests through ``put``).
"""

import threading
from typing import Dict, List, Protocol

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from licensing.features.entitlements.models import StoreUnavailableError
from licensing.features.gift_codes.models import GiftCodeRecord


class GiftCodeStore(Protocol):
    def list_records(self) -> List[GiftCodeRecord]:
        ...

    def put(self, record: GiftCodeRecord) -> None:
        ...


class InMemoryGiftCodeStore:
    def __init__(self):
        self._records: Dict[str, GiftCodeRecord] = {}
        self._lock = threading.Lock()
        self.available = True

    def list_records(self) -> List[GiftCodeRecord]:
        if not self.available:
            raise StoreUnavailableError("in-memory gift code store marked unavailable")
        with self._lock:
            return list(self._records.values())

    def put(self, record: GiftCodeRecord) -> None:
        if not self.available:
            raise StoreUnavailableError("in-memory gift code store marked unavailable")
        with self._lock:
            self._records[record.id] = record


class RedisGiftCodeStore:
    def __init__(self, client: Redis, prefix: str = "gift-codes:"):
        self.client = client
        self.prefix = prefix

    def list_records(self) -> List[GiftCodeRecord]:
        try:
            keys = list(self.client.scan_iter(match=f"{self.prefix}*", count=100))
            values = self.client.mget(keys) if keys else []
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

        records = []
        for raw in values:
            if raw is None:
                continue
            try:
                records.append(GiftCodeRecord.model_validate_json(raw))
            except ValidationError:
                # Skip a malformed entry rather than failing every code.
                continue
        return records

    def put(self, record: GiftCodeRecord) -> None:
        try:
            self.client.set(f"{self.prefix}{record.id}", record.model_dump_json(by_alias=True, exclude_none=True))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc
