"""Tests for gift code hashing, record usability and validation."""

import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from licensing.features.entitlements.models import Plan, StoreUnavailableError
from licensing.features.gift_codes.models import (
    LEGACY_FALLBACK_HASHES,
    GiftCodeRecord,
    hash_code,
    parse_fallback_hashes,
)
from licensing.features.gift_codes.service import GiftCodeService
from licensing.features.gift_codes.store import RedisGiftCodeStore


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def make_record(code, **kwargs):
    return GiftCodeRecord(id=kwargs.pop("id", "g1"), hash=hash_code(code), label="beta", **kwargs)


def test_hash_normalizes_whitespace_and_case():
    expected = hashlib.sha256(b"COMPANION-ABCD-EFGH").hexdigest()
    assert hash_code("  companion-abcd-efgh ") == expected
    assert hash_code("COMPANION-ABCD-EFGH") == expected


def test_record_usability():
    assert make_record("x").is_usable(NOW)
    assert not make_record("x", revoked=True).is_usable(NOW)
    assert not make_record("x", expires_at=NOW - timedelta(seconds=1)).is_usable(NOW)
    assert make_record("x", expires_at=NOW + timedelta(days=1)).is_usable(NOW)
    # naive expiry is read as UTC
    assert make_record("x", expires_at=datetime(2026, 7, 1)).is_usable(NOW)


def test_parse_fallback_hashes_with_expiry():
    records = parse_fallback_hashes(" abc , def:2026-12-31,,")
    assert [r.hash for r in records] == ["abc", "def"]
    assert records[0].expires_at is None
    assert records[1].expires_at.date().isoformat() == "2026-12-31"
    assert records[1].is_usable(datetime(2026, 12, 31, 23, 0, tzinfo=timezone.utc))


def test_builtin_fallback_list_parses():
    assert len(parse_fallback_hashes(",".join(LEGACY_FALLBACK_HASHES))) == 10


@pytest.fixture
def service(gift_store, signer):
    fallback = [GiftCodeRecord(id="legacy", hash=hash_code("LEGACY-CODE"))]
    return GiftCodeService(gift_store, signer, fallback=fallback, clock=lambda: NOW)


def test_valid_stored_code_mints_lifetime_credential(service, gift_store, signer):
    gift_store.put(make_record("COMPANION-AAAA-BBBB", expires_at=NOW + timedelta(days=30)))

    result = service.validate("companion-aaaa-bbbb")

    assert result.valid is True
    assert result.plan == Plan.LIFETIME
    assert result.identifier == "gift:" + hash_code("COMPANION-AAAA-BBBB")
    assert signer.verify(result.identifier, "lifetime", result.token)
    payload = result.to_payload()
    assert payload["expiresAt"].startswith("2026-07-01")
    assert payload["plan"] == "lifetime"


def test_revoked_and_expired_codes_are_rejected(service, gift_store):
    gift_store.put(make_record("REVOKED", id="g1", revoked=True))
    gift_store.put(make_record("EXPIRED", id="g2", expires_at=NOW - timedelta(days=1)))

    assert service.validate("REVOKED").valid is False
    assert service.validate("EXPIRED").to_payload() == {"valid": False, "error": "Invalid promo code"}


def test_fallback_list_not_used_while_store_is_up(service):
    assert service.validate("LEGACY-CODE").valid is False


def test_fallback_list_used_when_store_unavailable(service, gift_store):
    gift_store.available = False
    result = service.validate("legacy-code")
    assert result.valid is True
    assert result.expires_at is None


def test_redis_gift_store_reads_records():
    record = make_record("CODE")
    client = Mock()
    client.scan_iter.return_value = iter(["gift-codes:g1", "gift-codes:bad"])
    client.mget.return_value = [record.model_dump_json(by_alias=True), "{broken"]

    records = RedisGiftCodeStore(client).list_records()

    assert records == [record]
    client.scan_iter.assert_called_once_with(match="gift-codes:*", count=100)


def test_redis_gift_store_failure_is_unavailable():
    client = Mock()
    client.scan_iter.side_effect = RedisConnectionError("down")
    with pytest.raises(StoreUnavailableError):
        RedisGiftCodeStore(client).list_records()


# --- HTTP surface -----------------------------------------------------------


def test_gift_code_endpoint(client, gift_store):
    gift_store.put(make_record("COMPANION-AAAA-BBBB"))
    resp = client.post("/validate-gift-code", json={"code": "companion-aaaa-bbbb"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["valid"] is True
    assert body["expiresAt"] is None
    assert body["identifier"].startswith("gift:")


def test_gift_code_endpoint_requires_code(client):
    resp = client.post("/validate-gift-code", json={"code": "   "})
    assert resp.status_code == 400
    assert resp.json()["valid"] is False
    assert resp.json()["error"] == "Code is required"


def test_gift_code_endpoint_is_rate_limited(client):
    statuses = [client.post("/validate-gift-code", json={"code": "WRONG"}).status_code for _ in range(6)]
    assert statuses[:5] == [200] * 5
    assert statuses[5] == 429


def test_rate_limit_response_shape(client):
    for _ in range(5):
        client.post("/validate-gift-code", json={"code": "WRONG"}, headers={"x-forwarded-for": "9.9.9.9"})
    blocked = client.post("/validate-gift-code", json={"code": "WRONG"}, headers={"x-forwarded-for": "9.9.9.9"})
    assert blocked.status_code == 429
    assert int(blocked.headers["retry-after"]) >= 1
    body = blocked.json()
    assert body["code"] == "rate_limited"
    assert body["valid"] is False
    assert body["retryAfter"] >= 1

    other_ip = client.post("/validate-gift-code", json={"code": "WRONG"}, headers={"x-forwarded-for": "8.8.8.8"})
    assert other_ip.status_code == 200
