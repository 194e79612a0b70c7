"""Unit tests for the token service.

Tests for:
- Access/refresh pair issuance and claims
- Kind isolation between access, refresh and single-use tokens
- Strict expiry boundary
- Signature, algorithm, issuer and audience checks
- Signing secret validation
"""

import base64
import json
from datetime import timedelta

import pytest

from pixora_auth.service.errors import (
    ExpiredToken,
    InsecureConfiguration,
    InvalidToken,
    WrongTokenKind,
)
from pixora_auth.service.tokens import (
    ACCESS,
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    REFRESH,
    TokenService,
    hash_token,
    validate_signing_secrets,
)

from conftest import ACCESS_SECRET, REFRESH_SECRET


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssuePair:
    """Tests for access/refresh pair issuance."""

    def test_pair_carries_identity_claims(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "editor")
        claims = tokens.verify(pair.access_token, ACCESS)

        assert claims.subject == "user-1"
        assert claims.email == "a@x.com"
        assert claims.role == "editor"
        assert claims.session_id == pair.session_id
        assert claims.jti == pair.jti

    def test_access_and_refresh_have_distinct_jtis(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        refresh_claims = tokens.verify(pair.refresh_token, REFRESH)

        assert pair.jti != pair.refresh_jti
        assert refresh_claims.jti == pair.refresh_jti

    def test_reuses_given_session_id(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user", session_id="sess-1")
        assert pair.session_id == "sess-1"
        assert tokens.verify(pair.refresh_token, REFRESH).session_id == "sess-1"

    def test_default_lifetimes(self, tokens, clock):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        now = tokens.now()

        assert pair.access_expires_at - now == timedelta(minutes=15)
        assert pair.refresh_expires_at - now == timedelta(days=7)

    def test_extended_lifetime_for_remember_me(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user", extended_lifetime=True)
        assert pair.refresh_expires_at - tokens.now() == timedelta(days=30)

    def test_access_and_refresh_signed_with_different_secrets(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        assert pair.access_token.split(".")[2] != pair.refresh_token.split(".")[2]
        assert _payload(pair.access_token)["type"] == ACCESS
        assert _payload(pair.refresh_token)["type"] == REFRESH


class TestKindIsolation:
    """A token of one kind is never accepted as another."""

    def test_refresh_rejected_as_access(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        with pytest.raises(WrongTokenKind):
            tokens.verify(pair.refresh_token, ACCESS)

    def test_access_rejected_as_refresh(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        with pytest.raises(WrongTokenKind):
            tokens.verify(pair.access_token, REFRESH)

    def test_reset_token_rejected_as_verification(self, tokens):
        token = tokens.issue_single_use(PASSWORD_RESET, "a@x.com")
        with pytest.raises(WrongTokenKind):
            tokens.verify_single_use(token, EMAIL_VERIFICATION)

    def test_verify_rejects_single_use_kinds(self, tokens):
        token = tokens.issue_single_use(EMAIL_VERIFICATION, "a@x.com")
        with pytest.raises(ValueError):
            tokens.verify(token, EMAIL_VERIFICATION)

    def test_single_use_token_rejected_as_access(self, tokens):
        token = tokens.issue_single_use(EMAIL_VERIFICATION, "a@x.com")
        with pytest.raises(WrongTokenKind):
            tokens.verify(token, ACCESS)


class TestExpiry:
    """Tokens verify strictly before exp and fail at or after it."""

    def test_valid_one_second_before_expiry(self, tokens, clock):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        clock.advance(15 * 60 - 1)
        assert tokens.verify(pair.access_token, ACCESS).subject == "user-1"

    def test_expired_exactly_at_expiry(self, tokens, clock):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        clock.advance(15 * 60)
        with pytest.raises(ExpiredToken):
            tokens.verify(pair.access_token, ACCESS)

    def test_expired_after_expiry(self, tokens, clock):
        token = tokens.issue_single_use(PASSWORD_RESET, "a@x.com")
        clock.advance(15 * 60 + 30)
        with pytest.raises(ExpiredToken):
            tokens.verify_single_use(token, PASSWORD_RESET)

    def test_verification_token_lives_thirty_minutes(self, tokens, clock):
        token = tokens.issue_single_use(EMAIL_VERIFICATION, "a@x.com")
        claims = tokens.verify_single_use(token, EMAIL_VERIFICATION)
        assert claims.expires_at - tokens.now() == timedelta(minutes=30)


class TestSingleUse:
    """Tests for email-bound single-use tokens."""

    def test_reset_tokens_are_unique(self, tokens):
        first = tokens.issue_single_use(PASSWORD_RESET, "a@x.com")
        second = tokens.issue_single_use(PASSWORD_RESET, "a@x.com")

        assert first != second
        assert tokens.verify_single_use(first, PASSWORD_RESET).nonce

    def test_claims_bound_to_email(self, tokens):
        token = tokens.issue_single_use(EMAIL_VERIFICATION, "a@x.com")
        claims = tokens.verify_single_use(token, EMAIL_VERIFICATION)

        assert claims.email == "a@x.com"
        assert claims.kind == EMAIL_VERIFICATION

    def test_unknown_kind_rejected(self, tokens):
        with pytest.raises(ValueError):
            tokens.issue_single_use(ACCESS, "a@x.com")


class TestTamperResistance:
    """Tests for signature, header and claim validation."""

    def test_garbage_is_invalid(self, tokens):
        for bad in ("", "abc", "a.b", "a.b.c.d", "!!!.???.###"):
            with pytest.raises(InvalidToken):
                tokens.verify(bad, ACCESS)

    def test_modified_payload_is_invalid(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        header, _, signature = pair.access_token.split(".")
        payload = _payload(pair.access_token)
        payload["role"] = "super_admin"
        forged = f"{header}.{_b64(payload)}.{signature}"

        with pytest.raises(InvalidToken):
            tokens.verify(forged, ACCESS)

    def test_none_algorithm_rejected(self, tokens):
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        _, payload, signature = pair.access_token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.{signature}"

        with pytest.raises(InvalidToken):
            tokens.verify(forged, ACCESS)

    def test_token_from_other_secrets_is_invalid(self, tokens, clock):
        other = TokenService(
            access_secret="another-access-secret-0123456789abcdef",
            refresh_secret="another-refresh-secret-0123456789abcdef",
            issuer=tokens.issuer,
            audience=tokens.audience,
            clock=clock,
        )
        pair = other.issue_pair("user-1", "a@x.com", "user")
        with pytest.raises(InvalidToken):
            tokens.verify(pair.access_token, ACCESS)

    def test_audience_mismatch_is_invalid(self, tokens, clock):
        other = TokenService(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer=tokens.issuer,
            audience="some-other-app",
            clock=clock,
        )
        pair = other.issue_pair("user-1", "a@x.com", "user")
        with pytest.raises(InvalidToken):
            tokens.verify(pair.access_token, ACCESS)

    def test_relabelled_type_claim_is_invalid(self, tokens):
        # Claims "refresh" but was signed with the access secret
        pair = tokens.issue_pair("user-1", "a@x.com", "user")
        header, _, signature = pair.access_token.split(".")
        payload = _payload(pair.access_token)
        payload["type"] = REFRESH
        forged = f"{header}.{_b64(payload)}.{signature}"

        with pytest.raises(InvalidToken):
            tokens.verify(forged, REFRESH)


class TestSecretValidation:
    """Startup checks on signing secrets."""

    def test_missing_secret_refused(self):
        with pytest.raises(InsecureConfiguration):
            validate_signing_secrets("", REFRESH_SECRET, hardened=False)

    def test_shared_secret_refused(self):
        with pytest.raises(InsecureConfiguration):
            validate_signing_secrets(ACCESS_SECRET, ACCESS_SECRET, hardened=False)

    def test_short_secret_refused_when_hardened(self):
        with pytest.raises(InsecureConfiguration):
            validate_signing_secrets("short-access", "short-refresh", hardened=True)

    def test_short_secret_allowed_in_development(self):
        validate_signing_secrets("short-access", "short-refresh", hardened=False)

    def test_service_refuses_to_construct(self):
        with pytest.raises(InsecureConfiguration):
            TokenService(
                access_secret="same-secret",
                refresh_secret="same-secret",
                issuer="pixora-craftt",
                audience="pixora-craftt-app",
            )


def test_hash_token_is_stable_and_not_plaintext():
    assert hash_token("abc") == hash_token("abc")
    assert hash_token("abc") != "abc"
    assert len(hash_token("abc")) == 64
