"""
tests/test_tokens.py -- Unit tests for TokenIssuer and TokenValidator.

Covers:
  - Issued access tokens carry the company-role snapshot and default company
  - Refresh tokens are persisted as HMAC hashes only, never embedded or reused
  - Repeated issuance never repeats a jti, refresh value or session id
  - Validation order: signature -> expiry (zero tolerance) -> issuer/audience
  - allow_expired only skips the expiry check
  - Asymmetric (RS256) key configuration round-trips
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.keys import SigningKeys
from auth.models import RefreshTokenState
from auth.tokens import TokenIssuer, TokenValidator, hash_refresh_token
from conftest import COMPANY_A, COMPANY_B, TEST_SECRET_KEY
from core.config import Settings


def _issue(scenario, **kwargs):
    service = scenario.service
    principal = service.store.get_principal(scenario.principal_id)
    memberships = service.store.list_memberships(principal.id)
    return service.issuer.issue(principal, memberships, **kwargs)


def _payload(service, clock, **overrides) -> dict:
    now = int(clock.now.timestamp())
    payload = {
        "iss": service.settings.jwt_issuer,
        "aud": service.settings.jwt_audience,
        "sub": "principal-1",
        "iat": now,
        "exp": now + 900,
        "jti": "jti-1",
        "companies": {},
    }
    payload.update(overrides)
    return payload


class TestTokenIssuer:
    """issue() / mint() behaviour."""

    def test_access_token_carries_company_snapshot(self, scenario) -> None:
        """Claims list every active membership with its role and the default company."""
        pair = _issue(scenario)
        claims = scenario.service.validator.validate(pair.access_token)
        assert claims.principal_id == scenario.principal_id
        assert claims.tenant_roles == {COMPANY_A: "Manager", COMPANY_B: "Viewer"}
        assert claims.default_tenant_id == COMPANY_A
        assert claims.username == "p.user"

    def test_inactive_membership_not_in_snapshot(self, scenario) -> None:
        scenario.service.store.update_membership(scenario.principal_id, COMPANY_B, is_active=False)
        claims = scenario.service.validator.validate(_issue(scenario).access_token)
        assert COMPANY_B not in claims.tenant_roles

    def test_refresh_token_stored_as_hash(self, scenario, clock) -> None:
        """Only HMAC(SECRET_KEY, value) reaches the store; the record starts active."""
        pair = _issue(scenario)
        token_hash = hash_refresh_token(pair.refresh_token, TEST_SECRET_KEY)
        record = scenario.service.store.get_refresh_token_by_hash(token_hash)
        assert record is not None
        assert record.token_hash != pair.refresh_token
        assert record.state is RefreshTokenState.ACTIVE
        assert record.principal_id == scenario.principal_id
        assert record.expires_at == clock.now + timedelta(days=7)

    def test_expiry_defaults(self, scenario, clock) -> None:
        pair = _issue(scenario)
        assert pair.access_expires_at == clock.now + timedelta(minutes=15)
        assert pair.refresh_expires_at == clock.now + timedelta(days=7)
        assert pair.token_type == "bearer"

    def test_refresh_value_not_derivable_from_access_token(self, scenario) -> None:
        pair = _issue(scenario)
        assert pair.refresh_token.startswith("rt_")
        assert pair.refresh_token not in pair.access_token
        assert pair.refresh_token not in str(jwt.get_unverified_claims(pair.access_token))

    def test_repeated_issue_is_unique(self, scenario) -> None:
        """Same principal, same instant: every id and secret value still differs."""
        first, second = _issue(scenario), _issue(scenario)
        c1 = scenario.service.validator.validate(first.access_token)
        c2 = scenario.service.validator.validate(second.access_token)
        assert c1.token_id != c2.token_id
        assert c1.session_id != c2.session_id
        assert first.refresh_token != second.refresh_token

    def test_mint_does_not_persist(self, scenario) -> None:
        service = scenario.service
        principal = service.store.get_principal(scenario.principal_id)
        issued = service.issuer.mint(principal, service.store.list_memberships(principal.id))
        assert service.store.get_refresh_token(issued.record.id) is None

    def test_explicit_session_id_is_kept(self, scenario) -> None:
        pair = _issue(scenario, session_id="session-fixed")
        claims = scenario.service.validator.validate(pair.access_token)
        assert claims.session_id == "session-fixed"


class TestTokenValidator:
    """validate() check order and edge cases."""

    def test_round_trip_same_principal(self, scenario) -> None:
        claims = scenario.service.validate(_issue(scenario).access_token)
        assert claims.principal_id == scenario.principal_id

    def test_valid_one_second_before_expiry(self, scenario, clock) -> None:
        pair = _issue(scenario)
        clock.advance(minutes=14, seconds=59)
        assert scenario.service.validate(pair.access_token).principal_id == scenario.principal_id

    def test_expired_exactly_at_exp(self, scenario, clock) -> None:
        """Zero tolerance: the token is expired from the second exp is reached."""
        pair = _issue(scenario)
        clock.advance(minutes=15)
        with pytest.raises(TokenExpired):
            scenario.service.validate(pair.access_token)

    def test_rejects_one_second_past_expiry(self, scenario, clock) -> None:
        pair = _issue(scenario)
        clock.advance(minutes=15, seconds=1)
        with pytest.raises(TokenExpired):
            scenario.service.validate(pair.access_token)

    def test_allow_expired_returns_claims(self, scenario, clock) -> None:
        pair = _issue(scenario)
        clock.advance(days=1)
        claims = scenario.service.validator.validate(pair.access_token, allow_expired=True)
        assert claims.principal_id == scenario.principal_id

    def test_wrong_signature_is_invalid(self, service, clock) -> None:
        forged = jwt.encode(_payload(service, clock), "someone-else-secret-" + "x" * 32, algorithm="HS256")
        with pytest.raises(TokenInvalid):
            service.validate(forged)

    def test_wrong_signature_invalid_even_when_expired(self, service, clock) -> None:
        """Signature is checked first, so a forged expired token is invalid, not expired."""
        forged = jwt.encode(_payload(service, clock), "someone-else-secret-" + "x" * 32, algorithm="HS256")
        clock.advance(hours=1)
        with pytest.raises(TokenInvalid):
            service.validate(forged)

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    def test_malformed_token_is_invalid(self, service, token: str) -> None:
        with pytest.raises(TokenInvalid):
            service.validate(token)

    def test_wrong_issuer_is_invalid(self, service, clock) -> None:
        token = jwt.encode(_payload(service, clock, iss="someone-else"), TEST_SECRET_KEY, algorithm="HS256")
        with pytest.raises(TokenInvalid):
            service.validate(token)

    def test_wrong_audience_is_invalid(self, service, clock) -> None:
        token = jwt.encode(_payload(service, clock, aud="other-api"), TEST_SECRET_KEY, algorithm="HS256")
        with pytest.raises(TokenInvalid):
            service.validate(token)

    def test_audience_list_accepted(self, service, clock) -> None:
        aud = ["other-api", service.settings.jwt_audience]
        token = jwt.encode(_payload(service, clock, aud=aud), TEST_SECRET_KEY, algorithm="HS256")
        assert service.validate(token).principal_id == "principal-1"

    def test_expiry_checked_before_issuer(self, service, clock) -> None:
        token = jwt.encode(_payload(service, clock, iss="someone-else"), TEST_SECRET_KEY, algorithm="HS256")
        clock.advance(hours=1)
        with pytest.raises(TokenExpired):
            service.validate(token)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sub": None},
            {"jti": ""},
            {"exp": "tomorrow"},
            {"companies": ["company-a"]},
            {"companies": {"company-a": 3}},
            {"default_company_id": 42},
        ],
    )
    def test_malformed_claims_are_invalid(self, service, clock, overrides: dict) -> None:
        token = jwt.encode(_payload(service, clock, **overrides), TEST_SECRET_KEY, algorithm="HS256")
        with pytest.raises(TokenInvalid):
            service.validate(token)

    def test_algorithm_mismatch_is_invalid(self, service, clock) -> None:
        """A token signed with another HMAC algorithm is rejected even with the right secret."""
        token = jwt.encode(_payload(service, clock), TEST_SECRET_KEY, algorithm="HS512")
        with pytest.raises(TokenInvalid):
            service.validate(token)


class TestAsymmetricKeys:
    """RS256 configuration: sign with the private key, verify with the public key."""

    @pytest.fixture
    def rsa_settings(self) -> Settings:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        public_pem = (
            key.public_key()
            .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
            .decode()
        )
        return Settings(
            debug=True,
            secret_key=TEST_SECRET_KEY,
            jwt_algorithm="rs256",
            jwt_private_key=private_pem,
            jwt_public_key=public_pem,
        )

    def test_rs256_round_trip(self, rsa_settings: Settings, scenario, clock) -> None:
        keys = SigningKeys.from_settings(rsa_settings)
        assert keys.algorithm == "RS256"
        assert keys.signing_key != keys.verification_key

        store = scenario.service.store
        issuer = TokenIssuer(rsa_settings, keys, store, clock=clock)
        validator = TokenValidator(rsa_settings, keys, clock=clock)
        principal = store.get_principal(scenario.principal_id)
        pair = issuer.issue(principal, store.list_memberships(principal.id))
        assert validator.validate(pair.access_token).principal_id == scenario.principal_id

    def test_hs256_token_rejected_by_rs256_validator(self, rsa_settings: Settings, scenario, clock) -> None:
        validator = TokenValidator(rsa_settings, SigningKeys.from_settings(rsa_settings), clock=clock)
        hs_token = _issue(scenario).access_token
        with pytest.raises(TokenInvalid):
            validator.validate(hs_token)

    def test_symmetric_keys_use_secret_key(self, settings: Settings) -> None:
        keys = SigningKeys.from_settings(settings)
        assert keys == SigningKeys("HS256", TEST_SECRET_KEY, TEST_SECRET_KEY)
