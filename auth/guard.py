"""
auth/guard.py -- Declarative authorization policies and the guard that enforces them.

A Policy is declared once per protected operation. The guard evaluates it in
a fixed order and stops at the first failure:

  (a) tenant access: a tenant must resolve (else TenantUnresolved), a
      route-scoped tenant id must agree with it, and the caller needs an
      active membership in it (else Forbidden)
  (b) role: the caller's role is in the allowed set, case-insensitively
  (c) permission: the required permission is in the caller's effective set

Snapshot vs store [A2]:
  Non-sensitive policies read the role from the token snapshot when the
  snapshot covers the tenant, and fall back to the store when it does not
  (membership granted after the token was issued). Sensitive policies always
  re-read the membership, so a revoked membership or a demotion takes effect
  immediately for them instead of at the next refresh.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from auth.errors import Forbidden
from auth.models import Claims
from auth.permissions import PermissionResolver, normalize_role
from auth.store import AuthStore
from auth.tenancy import TenantSignals, require_tenant, resolve_tenant

logger = logging.getLogger("tenantgate.auth.guard")


@dataclass(frozen=True)
class Policy:
    """What an operation requires of its caller.

    Usage:
        MANAGE_MEMBERS = Policy(permission="users.manage", sensitive=True)
        LIST_MEMBERS = Policy(roles=("Admin", "Manager"), permission="users.view")
    """

    require_tenant: bool = True
    roles: Iterable[str] | None = None
    permission: str | None = None
    sensitive: bool = False
    allowed_roles: frozenset[str] = field(init=False, default=frozenset())

    def __post_init__(self) -> None:
        if not self.require_tenant and (self.roles or self.permission):
            raise ValueError("Role and permission checks need a tenant context")
        object.__setattr__(self, "allowed_roles", frozenset(normalize_role(r) for r in self.roles or ()))


@dataclass(frozen=True)
class AuthorizationContext:
    """Outcome of a successful authorize() call, handed to the operation."""

    principal_id: str
    tenant_id: str | None
    role: str | None
    permissions: frozenset[str]
    claims: Claims

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


class AuthorizationGuard:
    def __init__(self, store: AuthStore, resolver: PermissionResolver) -> None:
        self._store = store
        self._resolver = resolver

    def authorize(self, claims: Claims, signals: TenantSignals, policy: Policy) -> AuthorizationContext:
        """Return an AuthorizationContext or raise TenantUnresolved / Forbidden.

        claims must come from TokenValidator.validate(); the guard does not
        re-check the token.
        """
        if not policy.require_tenant:
            return AuthorizationContext(
                principal_id=claims.principal_id,
                tenant_id=resolve_tenant(signals, claims),
                role=None,
                permissions=frozenset(),
                claims=claims,
            )

        # (a) tenant access
        tenant_id = require_tenant(signals, claims)
        route_tenant = signals.route_tenant
        if route_tenant is not None and route_tenant != tenant_id:
            self._deny(claims, tenant_id, "company header does not match route company %s" % route_tenant)
        role, permissions = self._role_and_permissions(claims, tenant_id, policy.sensitive)
        if role is None:
            self._deny(claims, tenant_id, "no active membership")

        # (b) role
        if policy.allowed_roles and normalize_role(role) not in policy.allowed_roles:
            self._deny(claims, tenant_id, "role %s not in %s" % (role, sorted(policy.allowed_roles)))

        # (c) permission
        if policy.permission and policy.permission not in permissions:
            self._deny(
                claims,
                tenant_id,
                "missing permission %s" % policy.permission,
                detail=f"Requires permission '{policy.permission}'.",
            )

        return AuthorizationContext(
            principal_id=claims.principal_id,
            tenant_id=tenant_id,
            role=role,
            permissions=permissions,
            claims=claims,
        )

    def _role_and_permissions(
        self, claims: Claims, tenant_id: str, sensitive: bool
    ) -> tuple[str | None, frozenset[str]]:
        snapshot_role = None if sensitive else claims.role_in(tenant_id)
        if snapshot_role is not None:
            return snapshot_role, self._resolver.permissions_from_claims(claims, tenant_id)
        membership = self._store.get_membership(claims.principal_id, tenant_id)
        if membership is None or not membership.is_active:
            return None, frozenset()
        return membership.role, self._resolver.permissions_for_role(tenant_id, membership.role)

    @staticmethod
    def _deny(claims: Claims, tenant_id: str, reason: str, detail: str | None = None) -> None:
        logger.info("Denied principal %s in company %s: %s", claims.principal_id, tenant_id, reason)
        raise Forbidden(detail=detail)
