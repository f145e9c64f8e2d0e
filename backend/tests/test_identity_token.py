import time

import pytest

from app.core.exceptions import (
    IdentityTokenExpiredError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    KeySetUnavailableError,
    MalformedIdentityTokenError,
    MissingIatClaimError,
    MissingSubjectClaimError,
    NonceMismatchError,
    TokenTooOldError,
)
from app.services.identity_token import AppleKeySet, IdentityTokenVerifier, authenticate_with_apple

CLIENT_ID = "com.example.web"


def test_valid_token_returns_user_info(identity_verifier, make_id_token):
    info = identity_verifier.verify(make_id_token("u1", "n1"), CLIENT_ID, "n1")

    assert info.sub == "u1"
    assert info.email == "user@privaterelay.appleid.com"
    assert info.email_verified is True
    assert info.is_private_email is True


def test_native_flow_skips_nonce_check(identity_verifier, make_id_token):
    assert identity_verifier.verify(make_id_token("u1"), CLIENT_ID).sub == "u1"


@pytest.mark.parametrize(
    "kwargs, expected",
    [
        ({"email_verified": True, "is_private_email": True}, True),
        ({"email_verified": False, "is_private_email": False}, False),
        ({"email_verified": "true", "is_private_email": "true"}, True),
        ({"email_verified": "false", "is_private_email": "false"}, False),
        ({"drop": ("email_verified", "is_private_email")}, False),
    ],
)
def test_boolean_claims_accept_json_booleans_and_strings(identity_verifier, make_id_token, kwargs, expected):
    info = identity_verifier.verify(make_id_token("u1", "n1", **kwargs), CLIENT_ID, "n1")
    assert info.email_verified is expected
    assert info.is_private_email is expected


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"aud": "com.other.app"}, InvalidAudienceError),
        ({"drop": ("aud",)}, InvalidAudienceError),
        ({"iss": "https://evil.example.com"}, InvalidIssuerError),
        ({"drop": ("sub",)}, MissingSubjectClaimError),
        ({"drop": ("iat",)}, MissingIatClaimError),
    ],
)
def test_claim_failures(identity_verifier, make_id_token, kwargs, error):
    with pytest.raises(error):
        identity_verifier.verify(make_id_token("u1", "n1", **kwargs), CLIENT_ID, "n1")


def test_expired_token(identity_verifier, make_id_token):
    now = int(time.time())
    token = make_id_token("u1", "n1", iat=now - 1000, exp=now - 100)
    with pytest.raises(IdentityTokenExpiredError) as exc_info:
        identity_verifier.verify(token, CLIENT_ID, "n1")
    assert exc_info.value.reason == "expired"


def test_expiry_within_clock_tolerance_is_accepted(identity_verifier, make_id_token):
    now = int(time.time())
    token = make_id_token("u1", "n1", iat=now - 300, exp=now - 10)
    assert identity_verifier.verify(token, CLIENT_ID, "n1").sub == "u1"


def test_token_issued_more_than_ten_minutes_ago_is_rejected(identity_verifier, make_id_token):
    now = int(time.time())
    token = make_id_token("u1", "n1", iat=now - 601, exp=now + 600)
    with pytest.raises(TokenTooOldError) as exc_info:
        identity_verifier.verify(token, CLIENT_ID, "n1", now=now)
    assert exc_info.value.subject == "u1"


def test_token_issued_exactly_ten_minutes_ago_is_accepted(identity_verifier, make_id_token):
    now = int(time.time())
    token = make_id_token("u1", "n1", iat=now - 600, exp=now + 600)
    assert identity_verifier.verify(token, CLIENT_ID, "n1", now=now).sub == "u1"


def test_nonce_mismatch_carries_verified_subject(identity_verifier, make_id_token):
    with pytest.raises(NonceMismatchError) as exc_info:
        identity_verifier.verify(make_id_token("u1", "other"), CLIENT_ID, "n1")
    assert exc_info.value.subject == "u1"
    assert exc_info.value.reason == "nonce_mismatch"


def test_missing_nonce_claim_is_a_mismatch(identity_verifier, make_id_token):
    with pytest.raises(NonceMismatchError):
        identity_verifier.verify(make_id_token("u1"), CLIENT_ID, "n1")


def test_signature_from_foreign_key(identity_verifier, make_id_token, other_rsa_private_pem):
    token = make_id_token("u1", "n1", signing_key=other_rsa_private_pem)
    with pytest.raises(InvalidSignatureError) as exc_info:
        identity_verifier.verify(token, CLIENT_ID, "n1")
    assert exc_info.value.subject is None


@pytest.mark.parametrize("token", ["not-a-jwt", "a.b.c", ""])
def test_malformed_tokens(identity_verifier, token):
    with pytest.raises(MalformedIdentityTokenError):
        identity_verifier.verify(token, CLIENT_ID, "n1")


def test_token_without_kid_is_malformed(identity_verifier, make_id_token):
    with pytest.raises(MalformedIdentityTokenError):
        identity_verifier.verify(make_id_token("u1", "n1", kid=None), CLIENT_ID, "n1")


def test_unknown_kid_refetches_once_then_fails(identity_verifier, make_id_token, apple_stub):
    identity_verifier.verify(make_id_token("u1", "n1"), CLIENT_ID, "n1")
    assert apple_stub.key_requests == 1

    with pytest.raises(InvalidSignatureError):
        identity_verifier.verify(make_id_token("u1", "n1", kid="rotated-kid"), CLIENT_ID, "n1")
    assert apple_stub.key_requests == 2


def test_key_set_is_cached_between_verifications(identity_verifier, make_id_token, apple_stub):
    for _ in range(3):
        identity_verifier.verify(make_id_token("u1", "n1"), CLIENT_ID, "n1")
    assert apple_stub.key_requests == 1


def test_key_set_expiry_triggers_refetch(http_client, make_id_token, apple_stub):
    verifier = IdentityTokenVerifier(AppleKeySet(http_client=http_client, cache_ttl=0))
    verifier.verify(make_id_token("u1", "n1"), CLIENT_ID, "n1")
    verifier.verify(make_id_token("u1", "n1"), CLIENT_ID, "n1")
    assert apple_stub.key_requests == 2


def test_key_set_unavailable(identity_verifier, make_id_token, apple_stub):
    apple_stub.keys_status = 503
    with pytest.raises(KeySetUnavailableError):
        identity_verifier.verify(make_id_token("u1", "n1"), CLIENT_ID, "n1")


def test_authenticate_with_apple_exchanges_then_verifies(apple_config, apple_stub, http_client, identity_verifier):
    apple_stub.nonce = "n1"

    info = authenticate_with_apple(apple_config, "c1", "v1", "n1", verifier=identity_verifier, http_client=http_client)

    assert info.sub == "u1"
    assert apple_stub.token_requests[0]["code_verifier"] == ["v1"]
