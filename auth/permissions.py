"""
auth/permissions.py -- Role -> permission mapping and effective-permission lookup.

One central mapping table, loaded from the role_permissions store table at
startup and replaced wholesale on reload(). Lookups never read the mapping
from the database; they only compare the store's grants revision with the
one the table was loaded at. Grant writes from another worker process or the
CLI bump that revision, and the next lookup here reloads the table.

Resolution for (tenant, role):
  1. a per-tenant override for that role, when one exists, is authoritative
     (it replaces the global set, it does not extend it)
  2. otherwise the global default for the role
  3. otherwise the empty set

Role names are case-insensitive: "Manager", "manager" and "MANAGER" are the
same role.

Membership is the only authority for a principal's role in a tenant.
effective_permissions() re-reads it from the store on every call;
permissions_from_claims() is the cheap path that trusts the token snapshot
and is only used for non-sensitive checks.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.models import Claims
from auth.store import AuthStore

logger = logging.getLogger("tenantgate.auth.permissions")

# Built-in defaults, seeded into the store when it holds no global grants.
DEFAULT_ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "admin": frozenset(
        {
            "users.view",
            "users.create",
            "users.update",
            "users.delete",
            "users.manage",
            "companies.view",
            "companies.create",
            "companies.update",
            "companies.delete",
            "companies.manage",
            "transactions.view",
            "transactions.create",
            "transactions.update",
            "transactions.delete",
            "reports.view",
            "reports.create",
            "reports.export",
            "settings.view",
            "settings.update",
            "audit.view",
        }
    ),
    "manager": frozenset(
        {
            "users.view",
            "companies.view",
            "transactions.view",
            "transactions.create",
            "transactions.update",
            "reports.view",
            "reports.export",
        }
    ),
    "accountant": frozenset(
        {
            "transactions.view",
            "transactions.create",
            "transactions.update",
            "reports.view",
            "reports.export",
        }
    ),
    "employee": frozenset({"transactions.view", "reports.view"}),
    "viewer": frozenset({"companies.view", "reports.view"}),
}

_EMPTY: frozenset[str] = frozenset()


def normalize_role(role: str) -> str:
    return role.strip().lower()


class PermissionResolver:
    """Answer "what may this role / principal do in this tenant?".

    Usage:
        resolver = PermissionResolver(store)
        resolver.load()
        resolver.permissions_for_role(company_id, "Manager")
        resolver.effective_permissions(principal_id, company_id)
    """

    def __init__(self, store: AuthStore) -> None:
        self._store = store
        # (global table, per-tenant overrides), swapped as one object
        self._table: tuple[dict[str, frozenset[str]], dict[tuple[str, str], frozenset[str]]] = ({}, {})
        self._revision: int | None = None

    def load(self) -> None:
        """Read every grant from the store and swap in the new table."""
        # Revision first: a write landing between the two reads leaves the
        # table marked stale, never marked current.
        revision = self._store.permission_grants_revision()
        global_table: dict[str, frozenset[str]] = {}
        overrides: dict[tuple[str, str], frozenset[str]] = {}
        for grant in self._store.list_permission_grants():
            role = normalize_role(grant.role)
            if grant.tenant_id is None:
                global_table[role] = grant.permissions
            else:
                overrides[(grant.tenant_id, role)] = grant.permissions
        # One reference swap; readers see either the old or the new table
        self._table = (global_table, overrides)
        self._revision = revision
        logger.info("Loaded %d global role(s) and %d tenant override(s)", len(global_table), len(overrides))

    def reload(self) -> None:
        self.load()

    def set_role_permissions(self, role: str, permissions: Iterable[str], tenant_id: str | None = None) -> None:
        """Persist a role's permission set (global or per tenant) and reload the table."""
        self._store.set_role_permissions(role, permissions, tenant_id=tenant_id)
        self.reload()

    def refresh_if_stale(self) -> bool:
        """Reload when the store's grants revision moved. Returns True if it reloaded."""
        if self._store.permission_grants_revision() == self._revision:
            return False
        self.load()
        return True

    def permissions_for_role(self, tenant_id: str | None, role: str | None) -> frozenset[str]:
        if not role:
            return _EMPTY
        self.refresh_if_stale()
        key = normalize_role(role)
        global_table, overrides = self._table
        if tenant_id is not None:
            override = overrides.get((tenant_id, key))
            if override is not None:
                return override
        return global_table.get(key, _EMPTY)

    def effective_permissions(self, principal_id: str, tenant_id: str) -> frozenset[str]:
        """Permissions derived from the principal's current membership row."""
        membership = self._store.get_membership(principal_id, tenant_id)
        if membership is None or not membership.is_active:
            return _EMPTY
        return self.permissions_for_role(tenant_id, membership.role)

    def permissions_from_claims(self, claims: Claims, tenant_id: str) -> frozenset[str]:
        """Permissions derived from the token's role snapshot. Advisory only."""
        return self.permissions_for_role(tenant_id, claims.role_in(tenant_id))
