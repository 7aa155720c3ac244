"""
auth/tenancy.py -- Active-tenant resolution.

The tenant a request acts on comes from, in order of precedence:
  1. an explicit request signal (the X-Company-Id header by default)
  2. a route-scoped identifier (the company_id path parameter)
  3. the default tenant carried in the token

Blank or whitespace-only values count as absent. Resolution is a pure
function: it does not check membership. The authorization guard does.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.errors import TenantUnresolved
from auth.models import Claims


@dataclass(frozen=True)
class TenantSignals:
    """Tenant hints extracted from a request, passed explicitly to the core."""

    explicit: str | None = None
    route: str | None = None

    @property
    def route_tenant(self) -> str | None:
        return _clean(self.route)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_tenant(signals: TenantSignals, claims: Claims | None) -> str | None:
    """Return the active tenant id, or None when no source provides one."""
    for candidate in (signals.explicit, signals.route, claims.default_tenant_id if claims else None):
        tenant_id = _clean(candidate)
        if tenant_id is not None:
            return tenant_id
    return None


def require_tenant(signals: TenantSignals, claims: Claims | None) -> str:
    """Like resolve_tenant(), but raise TenantUnresolved instead of returning None."""
    tenant_id = resolve_tenant(signals, claims)
    if tenant_id is None:
        raise TenantUnresolved()
    return tenant_id
