"""Tests for activation credential signing and verification."""

import hashlib
import hmac

import pytest

from licensing.features.credentials.signer import ActivationSigner


def test_sign_is_hex_hmac_of_identifier_and_plan(signer):
    expected = hmac.new(b"test-activation-secret", b"a@x.com|monthly", hashlib.sha256).hexdigest()
    assert signer.sign("a@x.com", "monthly") == expected


def test_sign_is_deterministic(signer):
    assert signer.sign("a@x.com", "lifetime") == signer.sign("a@x.com", "lifetime")


@pytest.mark.parametrize(
    "identifier,plan",
    [("a@x.com", "monthly"), ("b@x.com", "lifetime"), ("gift:" + "0" * 64, "lifetime")],
)
def test_verify_accepts_own_tokens(signer, identifier, plan):
    assert signer.verify(identifier, plan, signer.sign(identifier, plan)) is True


def test_adjacent_inputs_produce_different_tokens(signer):
    base = signer.sign("a@x.com", "monthly")
    assert signer.sign("b@x.com", "monthly") != base
    assert signer.sign("a@x.com", "monthlx") != base
    assert signer.sign("a@x.co", "monthly") != base


def test_verify_rejects_token_for_other_identifier(signer):
    assert signer.verify("a@x.com", "monthly", signer.sign("b@x.com", "monthly")) is False


def test_verify_rejects_plan_swap(signer):
    monthly_token = signer.sign("a@x.com", "monthly")
    assert signer.verify("a@x.com", "lifetime", monthly_token) is False


def test_verify_rejects_token_from_other_secret(signer):
    forged = ActivationSigner("someone-else").sign("a@x.com", "lifetime")
    assert signer.verify("a@x.com", "lifetime", forged) is False


@pytest.mark.parametrize("token", ["", "zz", "not hex at all", "abc", "00" * 31, "00" * 33, None, 123, b"bytes"])
def test_malformed_tokens_fail_closed(signer, token):
    assert signer.verify("a@x.com", "monthly", token) is False


def test_empty_secret_is_rejected():
    with pytest.raises(ValueError):
        ActivationSigner("")
