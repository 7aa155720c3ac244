"""
auth/tokens.py -- Access-token issuance and validation, refresh-token minting.

Security design decisions:
  Access tokens: python-jose JWTs signed with the configured algorithm and key
       (auth/keys.py). Payload: iss, aud, sub (principal id), iat, exp, jti,
       sid (session id), username, default_company_id and companies -- a
       {company_id: role} snapshot of the principal's active memberships. The
       snapshot lets validation run without storage access; it is advisory,
       never authoritative (see auth/permissions.py).

  Validation order: signature, then expiry, then issuer/audience. Expiry has
       zero leeway and uses the injected clock: a token is expired from the
       second its exp is reached. TokenExpired and TokenInvalid are distinct so
       callers can choose between "refresh" and "log in again".

  Refresh tokens: "rt_" + secrets.token_urlsafe(48) -- 384 bits of entropy,
       unrelated to the access token. Only HMAC-SHA256(SECRET_KEY, value) is
       persisted, giving O(1) lookup without storing redeemable material. The
       raw value is returned to the caller once and never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.keys import SigningKeys
from auth.models import Claims, Principal, RefreshTokenRecord, TenantMembership, TokenPair
from core.clock import Clock, utc_now
from core.config import Settings

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("tenantgate.auth.tokens")

_REFRESH_PREFIX = "rt_"

# Signature and structure are verified by jose; time and issuer/audience
# checks run afterwards in TokenValidator so the order is ours to control.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_aud": False,
    "verify_iss": False,
    "verify_nbf": False,
}


# ---------------------------------------------------------------------------
# Refresh-token material
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    return f"{_REFRESH_PREFIX}{secrets.token_urlsafe(48)}"


def hash_refresh_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look the token up by hash. Without
    SECRET_KEY a stolen DB cannot be used to forge or recognize tokens.
    """
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedTokens:
    """A minted pair plus the refresh record that still has to be persisted."""

    pair: TokenPair
    record: RefreshTokenRecord


class TokenIssuer:
    """Mint access/refresh token pairs for a verified principal.

    mint() is side-effect free; issue() also persists the refresh record. The
    refresh coordinator uses mint() because it persists the successor inside
    its own rotation transaction.
    """

    def __init__(self, settings: Settings, keys: SigningKeys, store: AuthStore, clock: Clock = utc_now) -> None:
        self._settings = settings
        self._keys = keys
        self._store = store
        self._clock = clock
        self._access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self._refresh_ttl = timedelta(minutes=settings.refresh_token_expire_minutes)

    def mint(
        self,
        principal: Principal,
        memberships: Iterable[TenantMembership],
        session_id: str | None = None,
        device: str | None = None,
    ) -> IssuedTokens:
        # Whole seconds: JWT NumericDate has no sub-second part, and the
        # refresh record should agree with the access token to the second.
        now = self._clock().astimezone(timezone.utc).replace(microsecond=0)
        session_id = session_id or str(uuid.uuid4())
        active = [m for m in memberships if m.is_active]
        tenant_roles = {m.tenant_id: m.role for m in active}
        default_tenant = next((m.tenant_id for m in active if m.is_default), None)

        access_expires = now + self._access_ttl
        payload = {
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "sub": principal.id,
            "iat": int(now.timestamp()),
            "exp": int(access_expires.timestamp()),
            "jti": uuid.uuid4().hex,
            "sid": session_id,
            "username": principal.username,
            "default_company_id": default_tenant,
            "companies": tenant_roles,
        }
        access_token = jwt.encode(payload, self._keys.signing_key, algorithm=self._keys.algorithm)

        raw_refresh = generate_refresh_token()
        record = RefreshTokenRecord(
            id=str(uuid.uuid4()),
            token_hash=hash_refresh_token(raw_refresh, self._settings.secret_key),
            principal_id=principal.id,
            session_id=session_id,
            device=device,
            issued_at=now,
            expires_at=now + self._refresh_ttl,
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=raw_refresh,
            access_expires_at=access_expires,
            refresh_expires_at=record.expires_at,
        )
        return IssuedTokens(pair=pair, record=record)

    def issue(
        self,
        principal: Principal,
        memberships: Iterable[TenantMembership],
        session_id: str | None = None,
        device: str | None = None,
    ) -> TokenPair:
        issued = self.mint(principal, memberships, session_id=session_id, device=device)
        self._store.add_refresh_token(issued.record)
        logger.info("Issued token pair for principal %s (session %s)", principal.id, issued.record.session_id)
        return issued.pair


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class TokenValidator:
    """Verify a bearer access token and return its claims. No storage access."""

    def __init__(self, settings: Settings, keys: SigningKeys, clock: Clock = utc_now) -> None:
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._keys = keys
        self._clock = clock

    def validate(self, token: str, allow_expired: bool = False) -> Claims:
        """Return Claims, or raise TokenInvalid / TokenExpired.

        allow_expired skips only the expiry check. Signature, issuer and
        audience are always enforced; the refresh coordinator uses it to read
        the owner of an access token that has just run out.
        """
        if not token:
            raise TokenInvalid(detail="missing token")

        # 1. Signature and structure
        try:
            payload = jwt.decode(
                token,
                self._keys.verification_key,
                algorithms=[self._keys.algorithm],
                options=_DECODE_OPTIONS,
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            raise TokenInvalid(detail="signature or structure") from exc

        claims = _payload_to_claims(payload)

        # 2. Expiry -- zero tolerance
        if not allow_expired and self._clock() >= claims.expires_at:
            raise TokenExpired()

        # 3. Issuer / audience
        if payload.get("iss") != self._issuer:
            raise TokenInvalid(detail="issuer")
        audience = payload.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self._audience not in audiences:
            raise TokenInvalid(detail="audience")
        return claims


def _payload_to_claims(payload: dict) -> Claims:
    """Map a verified JWT payload onto Claims, rejecting malformed fields."""
    sub = payload.get("sub")
    jti = payload.get("jti")
    exp = payload.get("exp")
    iat = payload.get("iat")
    companies = payload.get("companies") or {}
    default_company = payload.get("default_company_id")
    if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
        raise TokenInvalid(detail="missing subject or token id")
    if not isinstance(exp, int) or not isinstance(iat, int):
        raise TokenInvalid(detail="missing time claims")
    if not isinstance(companies, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in companies.items()
    ):
        raise TokenInvalid(detail="malformed companies claim")
    if default_company is not None and not isinstance(default_company, str):
        raise TokenInvalid(detail="malformed default company")
    return Claims(
        principal_id=sub,
        tenant_roles=dict(companies),
        default_tenant_id=default_company,
        issued_at=datetime.fromtimestamp(iat, timezone.utc),
        expires_at=datetime.fromtimestamp(exp, timezone.utc),
        token_id=jti,
        session_id=payload.get("sid"),
        username=payload.get("username"),
    )
