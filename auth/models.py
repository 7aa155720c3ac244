"""
auth/models.py -- Domain dataclasses for authentication and authorization.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
the domain shape; the store, the issuer/validator and the guard do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RefreshTokenState(str, Enum):
    """Persisted refresh-token states.

    "expired" is deliberately absent: expiry is derived from expires_at at
    the moment of use, so no writer has to flip rows when time passes.
    """

    ACTIVE = "active"
    CONSUMED = "consumed"
    REVOKED = "revoked"


@dataclass
class Principal:
    """An identity that can log in.

    Both email and username are accepted as login identifiers. Principals are
    soft-disabled via is_active and never hard-deleted, so refresh-token and
    membership rows always have a valid owner.
    """

    email: str
    username: str
    hashed_password: str | None = None  # None = cannot log in with a secret
    id: str | None = None
    display_name: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login_at: str | None = None


@dataclass
class TenantMembership:
    """A principal's role inside one tenant (company).

    These rows are the sole authority for role-per-tenant. The role snapshot
    embedded in access tokens is derived from them at issuance time.
    """

    principal_id: str
    tenant_id: str
    role: str
    is_active: bool = True
    is_default: bool = False
    id: int | None = None
    joined_at: str | None = None
    left_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """Persisted half of a refresh token. The raw value never reaches the DB.

    session_id is stable across rotations: every token minted by redeeming
    another one inherits it, which is how logout of one device works.
    version backs the optimistic-concurrency guard on rotation.
    """

    id: str
    token_hash: str
    principal_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    state: RefreshTokenState = RefreshTokenState.ACTIVE
    device: str | None = None
    replaced_by: str | None = None
    closed_at: datetime | None = None  # set when the row leaves ACTIVE
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PermissionGrant:
    """Role -> permission set, global when tenant_id is None."""

    role: str
    permissions: frozenset[str]
    tenant_id: str | None = None


@dataclass(frozen=True)
class Claims:
    """Decoded, verified access-token payload."""

    principal_id: str
    tenant_roles: dict[str, str]
    default_tenant_id: str | None
    issued_at: datetime
    expires_at: datetime
    token_id: str
    session_id: str | None = None
    username: str | None = None

    def role_in(self, tenant_id: str) -> str | None:
        """Snapshot role for tenant_id. Advisory only -- see PermissionResolver."""
        return self.tenant_roles.get(tenant_id)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class PrincipalSummary:
    id: str
    email: str
    username: str
    display_name: str | None
    default_tenant_id: str | None
    tenant_roles: dict[str, str] = field(default_factory=dict)
    permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    principal: PrincipalSummary
