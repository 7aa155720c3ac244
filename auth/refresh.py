"""
auth/refresh.py -- Refresh-token redemption with single-use rotation.

Refresh-token lifecycle:
  active --redeem--> consumed (replaced_by = successor id)
  active --logout / device re-login / reuse response--> revoked
  active --time passes--> expired (derived from expires_at, never written)

Every exit from active is terminal. A consumed or revoked token that shows up
again is a replay signal: either a client bug or a stolen token. It is
rejected and logged on the tenantgate.security logger at WARNING.

Rotation is delegated to AuthStore.rotate_refresh_token(), a conditional
UPDATE guarded by (id, state='active', version) plus the successor INSERT in
one transaction [R1]. When two requests redeem the same token concurrently,
both can pass the checks below, but only one conditional write matches a row.
The loser gets RefreshTokenInvalid and its minted pair is discarded.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import RefreshTokenInvalid
from auth.models import RefreshTokenState, TokenPair
from auth.store import AuthStore
from auth.tokens import TokenIssuer, TokenValidator, hash_refresh_token
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("tenantgate.auth.refresh")
security_logger = logging.getLogger("tenantgate.security")


class RefreshCoordinator:
    """Exchange a (access, refresh) pair for a new pair exactly once."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        issuer: TokenIssuer,
        validator: TokenValidator,
        clock: Clock = utc_now,
    ) -> None:
        self._secret_key = settings.secret_key
        self._revoke_on_reuse = settings.revoke_session_on_refresh_reuse
        self._store = store
        self._issuer = issuer
        self._validator = validator
        self._clock = clock

    def redeem(self, access_token: str, refresh_token: str) -> TokenPair:
        """Return a new TokenPair and consume the presented refresh token.

        Raises:
            TokenInvalid: the access token is forged or malformed. An expired
                but correctly signed access token is accepted.
            RefreshTokenInvalid: unknown, consumed, revoked or expired refresh
                token, owner mismatch, inactive principal, or a lost race.
        """
        claims = self._validator.validate(access_token, allow_expired=True)
        if not refresh_token:
            raise RefreshTokenInvalid()

        record = self._store.get_refresh_token_by_hash(hash_refresh_token(refresh_token, self._secret_key))
        if record is None:
            logger.info("Refresh rejected: unknown token presented for principal %s", claims.principal_id)
            raise RefreshTokenInvalid()

        if record.state is not RefreshTokenState.ACTIVE:
            security_logger.warning(
                "Refresh token replay: %s token %s (principal %s, session %s)",
                record.state.value,
                record.id,
                record.principal_id,
                record.session_id,
            )
            if record.state is RefreshTokenState.CONSUMED and self._revoke_on_reuse:
                revoked = self._store.revoke_refresh_tokens(record.principal_id, session_id=record.session_id)
                security_logger.warning("Revoked %d token(s) of session %s after replay", revoked, record.session_id)
            raise RefreshTokenInvalid()

        if record.is_expired(self._clock()):
            logger.info("Refresh rejected: token %s expired", record.id)
            raise RefreshTokenInvalid()

        # Cross-pairing: a refresh token only works with its owner's access token
        if record.principal_id != claims.principal_id:
            security_logger.warning(
                "Refresh token %s presented with an access token of a different principal (%s != %s)",
                record.id,
                claims.principal_id,
                record.principal_id,
            )
            raise RefreshTokenInvalid()

        principal = self._store.get_principal(record.principal_id)
        if principal is None or not principal.is_active:
            logger.info("Refresh rejected: principal %s missing or deactivated", record.principal_id)
            raise RefreshTokenInvalid()

        # Roles come from the store, not the old token: membership changes
        # take effect at the next refresh.
        memberships = self._store.list_memberships(principal.id)
        issued = self._issuer.mint(principal, memberships, session_id=record.session_id, device=record.device)

        if not self._store.rotate_refresh_token(record, issued.record):
            security_logger.warning(
                "Concurrent redemption of refresh token %s lost the rotation (session %s)",
                record.id,
                record.session_id,
            )
            raise RefreshTokenInvalid()

        logger.info("Rotated refresh token %s -> %s (session %s)", record.id, issued.record.id, record.session_id)
        return issued.pair
