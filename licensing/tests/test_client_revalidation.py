"""Client revalidation policy tests, served by httpx.MockTransport or the real app over ASGI."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from licensing.client.revalidation import (
    LicenseClient,
    LicenseServerUnreachable,
    RevalidationPolicy,
    RevalidationState,
)
from licensing.client.storage import ActivationRecord, ActivationStore
from licensing.core.config import Settings
from licensing.features.entitlements.models import Plan
from licensing.main import create_app


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
TOKEN = "ab" * 32


def _clock():
    return NOW


def _mock_client(handler):
    return LicenseClient("http://licensing.test", transport=httpx.MockTransport(handler))


def _json_handler(body, status_code=200, calls=None):
    def handler(request: httpx.Request):
        if calls is not None:
            calls.append((request.url.path, json.loads(request.content)))
        return httpx.Response(status_code, json=body)

    return handler


def _credentialed(**overrides):
    data = dict(
        activated=True,
        email="alice@example.com",
        identifier="alice@example.com",
        plan="monthly",
        token=TOKEN,
        last_revalidated_at=NOW - timedelta(days=2),
    )
    data.update(overrides)
    return ActivationRecord(**data)


@pytest.fixture
def store(tmp_path):
    return ActivationStore(tmp_path / "activation.json")


@pytest.mark.asyncio
async def test_inactive_record_makes_no_call(store):
    calls = []
    policy = RevalidationPolicy(store, _mock_client(_json_handler({"valid": True}, calls=calls)), clock=_clock)
    outcome = await policy.run()
    assert outcome.state == RevalidationState.INACTIVE
    assert calls == []


@pytest.mark.asyncio
async def test_recent_check_is_skipped(store):
    store.save(_credentialed(last_revalidated_at=NOW - timedelta(hours=1)))
    calls = []
    policy = RevalidationPolicy(store, _mock_client(_json_handler({"valid": True}, calls=calls)), clock=_clock)
    outcome = await policy.run()
    assert outcome.state == RevalidationState.SKIPPED_RECENT
    assert outcome.activated
    assert calls == []


@pytest.mark.asyncio
async def test_stale_check_confirmed(store):
    store.save(_credentialed())
    calls = []
    policy = RevalidationPolicy(store, _mock_client(_json_handler({"valid": True}, calls=calls)), clock=_clock)

    outcome = await policy.run()

    assert outcome.state == RevalidationState.CONFIRMED
    assert calls == [
        ("/verify", {"action": "revalidate", "email": "alice@example.com", "plan": "monthly", "token": TOKEN})
    ]
    assert store.load().last_revalidated_at == NOW


@pytest.mark.asyncio
async def test_definitive_invalid_deactivates(store):
    store.save(_credentialed())
    policy = RevalidationPolicy(
        store, _mock_client(_json_handler({"valid": False, "error": "Subscription is no longer active"})), clock=_clock
    )

    outcome = await policy.run()

    assert outcome.state == RevalidationState.REVOKED
    saved = store.load()
    assert saved.activated is False
    assert saved.token is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_server_errors_keep_activation(store, status_code):
    store.save(_credentialed())
    policy = RevalidationPolicy(store, _mock_client(_json_handler({"error": "x"}, status_code)), clock=_clock)

    outcome = await policy.run()

    assert outcome.state == RevalidationState.UNREACHABLE
    assert store.load().activated is True
    assert store.load().token == TOKEN


@pytest.mark.asyncio
async def test_timeout_is_unreachable_not_revoked(store):
    store.save(_credentialed())

    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    outcome = await RevalidationPolicy(store, _mock_client(handler), clock=_clock).run()

    assert outcome.state == RevalidationState.UNREACHABLE
    assert store.load().activated is True


@pytest.mark.asyncio
async def test_non_json_body_is_unreachable():
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(LicenseServerUnreachable):
        await _mock_client(handler).verify("alice@example.com")


@pytest.mark.asyncio
async def test_expired_beta_deactivates_without_call(store):
    store.save(_credentialed(is_beta_tester=True, beta_expires_at=NOW - timedelta(seconds=1)))
    calls = []
    policy = RevalidationPolicy(store, _mock_client(_json_handler({"valid": True}, calls=calls)), clock=_clock)

    outcome = await policy.run()

    assert outcome.state == RevalidationState.EXPIRED
    assert store.load().activated is False
    assert calls == []


@pytest.mark.asyncio
async def test_legacy_record_upgraded_silently(store):
    store.save(ActivationRecord(activated=True, email="Alice@Example.com", plan="monthly"))
    calls = []
    handler = _json_handler({"valid": True, "plan": "monthly", "token": TOKEN}, calls=calls)

    outcome = await RevalidationPolicy(store, _mock_client(handler), clock=_clock).run()

    assert outcome.state == RevalidationState.UPGRADED
    assert calls == [("/verify", {"email": "alice@example.com"})]
    saved = store.load()
    assert saved.token == TOKEN
    assert saved.identifier == "alice@example.com"
    assert saved.last_revalidated_at == NOW


@pytest.mark.asyncio
async def test_legacy_record_retained_when_upgrade_fails(store):
    store.save(ActivationRecord(activated=True, email="alice@example.com", plan="monthly"))

    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    outcome = await RevalidationPolicy(store, _mock_client(handler), clock=_clock).run()

    assert outcome.state == RevalidationState.LEGACY_RETAINED
    assert store.load().activated is True


@pytest.mark.asyncio
async def test_legacy_record_without_email_or_beta_is_deactivated(store):
    store.save(ActivationRecord(activated=True, plan="monthly"))
    outcome = await RevalidationPolicy(store, _mock_client(_json_handler({})), clock=_clock).run()
    assert outcome.state == RevalidationState.DEACTIVATED_NO_PROOF
    assert store.load().activated is False


@pytest.mark.asyncio
async def test_legacy_beta_tester_without_email_is_retained(store):
    store.save(ActivationRecord(activated=True, plan="lifetime", is_beta_tester=True))
    outcome = await RevalidationPolicy(store, _mock_client(_json_handler({})), clock=_clock).run()
    assert outcome.state == RevalidationState.LEGACY_RETAINED


@pytest.mark.asyncio
async def test_gift_code_activation_is_time_boxed(store):
    body = {
        "valid": True,
        "expiresAt": "2024-12-31T23:59:59+00:00",
        "token": TOKEN,
        "identifier": "gift:" + "cd" * 32,
        "plan": "lifetime",
    }
    policy = RevalidationPolicy(store, _mock_client(_json_handler(body)), clock=_clock)

    await policy.activate_with_gift_code("BETA-2024")

    saved = store.load()
    assert saved.activated is True
    assert saved.is_beta_tester is True
    assert saved.identifier == body["identifier"]
    assert saved.beta_expires_at == datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_failed_email_activation_stores_nothing(store):
    policy = RevalidationPolicy(
        store, _mock_client(_json_handler({"valid": False, "error": "No active purchase found for this email"})), clock=_clock
    )
    data = await policy.activate_with_email("nobody@example.com")
    assert data["valid"] is False
    assert store.load().activated is False


@pytest.mark.asyncio
async def test_against_running_app(store, services, provider):
    provider.plans["alice@example.com"] = Plan.MONTHLY
    app = create_app(services=services, settings_obj=Settings(_env_file=None, ENV="test"))
    client = LicenseClient("http://testserver", transport=httpx.ASGITransport(app=app))
    policy = RevalidationPolicy(store, client, interval=timedelta(0), clock=_clock)

    await policy.activate_with_email("alice@example.com")
    assert store.load().has_credential

    outcome = await policy.run()
    assert outcome.state == RevalidationState.CONFIRMED

    services.cache.revoke("alice@example.com")
    outcome = await policy.run()
    assert outcome.state == RevalidationState.REVOKED
    assert store.load().activated is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,body",
    [
        (400, {"valid": False, "error": "Email, plan and token are required", "code": "invalid_input"}),
        (401, {"detail": "Unauthorized"}),
        (403, {"message": "Forbidden"}),
        (404, {"error": "Not Found", "code": "not_found"}),
    ],
)
async def test_client_errors_are_not_a_verdict(store, status_code, body):
    store.save(_credentialed())
    policy = RevalidationPolicy(store, _mock_client(_json_handler(body, status_code)), clock=_clock)

    outcome = await policy.run()

    assert outcome.state == RevalidationState.UNREACHABLE
    saved = store.load()
    assert saved.activated is True
    assert saved.token == TOKEN


@pytest.mark.asyncio
async def test_body_without_valid_flag_is_not_a_verdict(store):
    store.save(_credentialed())
    policy = RevalidationPolicy(store, _mock_client(_json_handler({"status": "ok"})), clock=_clock)

    outcome = await policy.run()

    assert outcome.state == RevalidationState.UNREACHABLE
    assert store.load().activated is True


@pytest.mark.asyncio
async def test_credential_without_plan_is_upgraded_not_revalidated(store):
    store.save(_credentialed(plan=None))
    calls = []
    handler = _json_handler({"valid": True, "plan": "monthly", "token": TOKEN}, calls=calls)

    outcome = await RevalidationPolicy(store, _mock_client(handler), clock=_clock).run()

    assert outcome.state == RevalidationState.UPGRADED
    assert calls == [("/verify", {"email": "alice@example.com"})]
    assert store.load().plan == "monthly"


@pytest.mark.asyncio
async def test_credential_without_plan_is_retained_when_server_silent(store):
    store.save(_credentialed(plan=None, email=None))

    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    outcome = await RevalidationPolicy(store, _mock_client(handler), clock=_clock).run()

    assert outcome.state == RevalidationState.LEGACY_RETAINED
    assert store.load().activated is True
