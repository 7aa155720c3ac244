"""
tests/test_refresh.py -- Tests for RefreshCoordinator and refresh-token lifecycle.

Covers:
  - Successful rotation: old token consumed, successor linked, session kept
  - Single use: a second redemption fails, including under real concurrency
  - Replays are logged on the tenantgate.security logger
  - Expired-but-signed access tokens are accepted; forged ones are not
  - Cross-pairing, unknown, expired and deactivated-owner cases
  - Logout (one session / all sessions) and device re-login revocation
  - Optional session revocation on replay
"""

from __future__ import annotations

import logging
import threading

import pytest

from auth.errors import RefreshTokenInvalid, TokenInvalid
from auth.models import RefreshTokenState
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import hash_refresh_token
from conftest import COMPANY_A, COMPANY_C, PASSWORD, TEST_SECRET_KEY
from core.config import Settings


def _record(service: AuthService, raw_refresh: str):
    return service.store.get_refresh_token_by_hash(hash_refresh_token(raw_refresh, TEST_SECRET_KEY))


class TestRedeem:
    """Happy path and single-use guarantee."""

    def test_rotation_consumes_and_links(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        t2 = service.refresh(t1.access_token, t1.refresh_token)

        old = _record(service, t1.refresh_token)
        new = _record(service, t2.refresh_token)
        assert old.state is RefreshTokenState.CONSUMED
        assert old.replaced_by == new.id
        assert old.closed_at is not None
        assert new.state is RefreshTokenState.ACTIVE
        assert new.session_id == old.session_id

    def test_session_id_stable_across_rotations(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        t2 = service.refresh(t1.access_token, t1.refresh_token)
        t3 = service.refresh(t2.access_token, t2.refresh_token)
        sessions = {service.validate(t.access_token).session_id for t in (t1, t2, t3)}
        assert len(sessions) == 1

    def test_second_redemption_fails(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        service.refresh(t1.access_token, t1.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, t1.refresh_token)

    def test_replay_logged_as_security_signal(self, scenario, caplog) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        service.refresh(t1.access_token, t1.refresh_token)
        with caplog.at_level(logging.WARNING, logger="tenantgate.security"):
            with pytest.raises(RefreshTokenInvalid):
                service.refresh(t1.access_token, t1.refresh_token)
        replay = [r for r in caplog.records if r.name == "tenantgate.security"]
        assert replay, "Replay of a consumed token must be logged on tenantgate.security"
        assert t1.refresh_token not in caplog.text

    def test_expired_access_token_accepted(self, scenario, clock) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        clock.advance(hours=2)
        t2 = service.refresh(t1.access_token, t1.refresh_token)
        assert service.validate(t2.access_token).principal_id == scenario.principal_id

    def test_new_pair_reflects_current_memberships(self, scenario) -> None:
        """Roles are re-read from the store at refresh, not copied from the old token."""
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        service.add_member(COMPANY_C, scenario.principal_id, "Accountant")
        service.update_member(COMPANY_A, scenario.principal_id, role="Viewer")
        t2 = service.refresh(t1.access_token, t1.refresh_token)
        claims = service.validate(t2.access_token)
        assert claims.tenant_roles[COMPANY_C] == "Accountant"
        assert claims.tenant_roles[COMPANY_A] == "Viewer"


class TestRedeemRejections:
    """Every rejection path leaves the presented token unusable or untouched as appropriate."""

    def test_forged_access_token(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        with pytest.raises(TokenInvalid):
            service.refresh(t1.access_token + "x", t1.refresh_token)
        assert _record(service, t1.refresh_token).state is RefreshTokenState.ACTIVE

    def test_unknown_refresh_token(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, "rt_not-a-real-token")

    def test_empty_refresh_token(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, "")

    def test_expired_refresh_token(self, scenario, clock) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        clock.advance(days=7)
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, t1.refresh_token)

    def test_cross_pairing_rejected_and_logged(self, scenario, caplog) -> None:
        """P's refresh token with Q's access token fails and does not burn P's token."""
        service = scenario.service
        p_tokens = service.login("p@example.com", PASSWORD).tokens
        q_tokens = service.login("q@example.com", PASSWORD).tokens
        with caplog.at_level(logging.WARNING, logger="tenantgate.security"):
            with pytest.raises(RefreshTokenInvalid):
                service.refresh(q_tokens.access_token, p_tokens.refresh_token)
        assert any(r.name == "tenantgate.security" for r in caplog.records)
        assert _record(service, p_tokens.refresh_token).state is RefreshTokenState.ACTIVE

    def test_deactivated_principal(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        service.store.update_principal(scenario.principal_id, is_active=False)
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, t1.refresh_token)

    def test_deactivate_principal_revokes_tokens(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        assert service.store.deactivate_principal(scenario.principal_id) is True
        assert _record(service, t1.refresh_token).state is RefreshTokenState.REVOKED


class TestLogout:
    def test_refresh_after_logout_fails(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        session_id = service.validate(t1.access_token).session_id
        assert service.logout(scenario.principal_id, session_id=session_id) == 1
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, t1.refresh_token)

    def test_access_token_survives_logout(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        service.logout(scenario.principal_id)
        assert service.validate(t1.access_token).principal_id == scenario.principal_id

    def test_session_logout_keeps_other_sessions(self, scenario) -> None:
        service = scenario.service
        phone = service.login("p@example.com", PASSWORD).tokens
        laptop = service.login("p@example.com", PASSWORD).tokens
        service.logout(scenario.principal_id, session_id=service.validate(phone.access_token).session_id)
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(phone.access_token, phone.refresh_token)
        service.refresh(laptop.access_token, laptop.refresh_token)

    def test_logout_all_sessions(self, scenario) -> None:
        service = scenario.service
        service.login("p@example.com", PASSWORD)
        service.login("p@example.com", PASSWORD)
        assert service.logout(scenario.principal_id) == 2
        assert service.store.count_active_refresh_tokens(scenario.principal_id) == 0

    def test_device_relogin_revokes_previous_token(self, scenario) -> None:
        service = scenario.service
        first = service.login("p@example.com", PASSWORD, device="laptop").tokens
        service.login("p@example.com", PASSWORD, device="laptop")
        service.login("p@example.com", PASSWORD, device="phone")
        assert _record(service, first.refresh_token).state is RefreshTokenState.REVOKED
        assert service.store.count_active_refresh_tokens(scenario.principal_id) == 2


class TestReuseResponse:
    """revoke_session_on_refresh_reuse toggles what a replay does to the live successor."""

    def test_replay_keeps_successor_by_default(self, scenario) -> None:
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        t2 = service.refresh(t1.access_token, t1.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, t1.refresh_token)
        assert _record(service, t2.refresh_token).state is RefreshTokenState.ACTIVE

    def test_replay_revokes_session_when_enabled(self, store, clock) -> None:
        settings = Settings(debug=True, secret_key=TEST_SECRET_KEY, revoke_session_on_refresh_reuse=True)
        service = AuthService(settings, store, clock=clock)
        service.create_principal("r@example.com", "r.user", PASSWORD)
        t1 = service.login("r.user", PASSWORD).tokens
        t2 = service.refresh(t1.access_token, t1.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t1.access_token, t1.refresh_token)
        assert _record(service, t2.refresh_token).state is RefreshTokenState.REVOKED
        with pytest.raises(RefreshTokenInvalid):
            service.refresh(t2.access_token, t2.refresh_token)


class TestConcurrentRedemption:
    """Exactly one of several concurrent redemptions of the same token succeeds."""

    def test_stale_version_cannot_rotate(self, scenario) -> None:
        """Two coordinators that read the same row: the second conditional write matches nothing."""
        service = scenario.service
        t1 = service.login("p@example.com", PASSWORD).tokens
        record = _record(service, t1.refresh_token)
        principal = service.store.get_principal(scenario.principal_id)
        memberships = service.store.list_memberships(principal.id)
        first = service.issuer.mint(principal, memberships, session_id=record.session_id)
        second = service.issuer.mint(principal, memberships, session_id=record.session_id)

        assert service.store.rotate_refresh_token(record, first.record) is True
        assert service.store.rotate_refresh_token(record, second.record) is False
        assert service.store.get_refresh_token(second.record.id) is None
        assert service.store.count_active_refresh_tokens(principal.id, session_id=record.session_id) == 1

    def test_threads_race_for_one_token(self, settings, clock, tmp_path) -> None:
        store = AuthStore(db_url=f"sqlite:///{tmp_path / 'race.db'}", clock=clock)
        try:
            service = AuthService(settings, store, clock=clock)
            service.create_principal("race@example.com", "racer", PASSWORD)
            tokens = service.login("racer", PASSWORD).tokens

            workers = 8
            barrier = threading.Barrier(workers)
            successes: list[str] = []
            failures: list[Exception] = []
            lock = threading.Lock()

            def redeem() -> None:
                barrier.wait()
                try:
                    pair = service.refresh(tokens.access_token, tokens.refresh_token)
                except RefreshTokenInvalid as exc:
                    with lock:
                        failures.append(exc)
                else:
                    with lock:
                        successes.append(pair.refresh_token)

            threads = [threading.Thread(target=redeem) for _ in range(workers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert len(successes) == 1
            assert len(failures) == workers - 1
            principal_id = service.validate(tokens.access_token).principal_id
            assert store.count_active_refresh_tokens(principal_id) == 1
            assert _record(service, successes[0]).state is RefreshTokenState.ACTIVE
        finally:
            store.close()
