"""
tests/test_tenancy.py -- Tests for active-tenant resolution.

Precedence is explicit signal > route-scoped id > token default, for every
combination of present and absent sources. Blank values count as absent.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import TenantUnresolved
from auth.models import Claims
from auth.tenancy import TenantSignals, require_tenant, resolve_tenant


def _claims(default_tenant_id: str | None) -> Claims:
    now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    return Claims(
        principal_id="p",
        tenant_roles={},
        default_tenant_id=default_tenant_id,
        issued_at=now,
        expires_at=now + timedelta(minutes=15),
        token_id="jti",
    )


@pytest.mark.parametrize(
    "explicit,route,default",
    list(itertools.product(["explicit-co", None], ["route-co", None], ["default-co", None])),
)
def test_precedence_all_combinations(explicit, route, default) -> None:
    expected = explicit or route or default
    signals = TenantSignals(explicit=explicit, route=route)
    assert resolve_tenant(signals, _claims(default)) == expected


@pytest.mark.parametrize("blank", ["", "   ", "\t"])
def test_blank_values_count_as_absent(blank: str) -> None:
    assert resolve_tenant(TenantSignals(explicit=blank, route="route-co"), _claims("default-co")) == "route-co"
    assert resolve_tenant(TenantSignals(explicit=None, route=blank), _claims("default-co")) == "default-co"
    assert resolve_tenant(TenantSignals(), _claims(blank)) is None


def test_values_are_stripped() -> None:
    assert resolve_tenant(TenantSignals(explicit="  acme  "), None) == "acme"


def test_no_claims_uses_signals_only() -> None:
    assert resolve_tenant(TenantSignals(route="route-co"), None) == "route-co"
    assert resolve_tenant(TenantSignals(), None) is None


def test_require_tenant_raises_when_nothing_applies() -> None:
    with pytest.raises(TenantUnresolved) as exc_info:
        require_tenant(TenantSignals(), _claims(None))
    assert exc_info.value.code == "tenant_required"
    assert exc_info.value.status_code == 400


def test_require_tenant_returns_resolved_id() -> None:
    assert require_tenant(TenantSignals(route="route-co"), _claims("default-co")) == "route-co"


def test_route_tenant_property_cleans_value() -> None:
    assert TenantSignals(route=" ").route_tenant is None
    assert TenantSignals(route=" acme ").route_tenant == "acme"
