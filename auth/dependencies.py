"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

The access token is read from the Authorization: Bearer <token> header only.
Tenant signals come from the configured company header (X-Company-Id by
default) and the {company_id} path parameter when the route has one.

get_claims()      -- validate the bearer token, return Claims
tenant_signals()  -- collect tenant hints from the request
require(policy)   -- build a dependency that runs the AuthorizationGuard

All failures are raised as auth.errors.AuthError subclasses; api/main.py maps
them onto the JSON error envelope and the right status code.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import TokenInvalid
from auth.guard import AuthorizationContext, Policy
from auth.models import Claims
from auth.service import AuthService
from auth.tenancy import TenantSignals

_BEARER_PREFIX = "bearer "


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str:
    """Return the raw bearer token, or raise TokenInvalid when none is sent."""
    header = request.headers.get("Authorization", "")
    if header[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        token = header[len(_BEARER_PREFIX) :].strip()
        if token:
            return token
    raise TokenInvalid("Authentication required.", detail="missing bearer token")


def get_claims(request: Request, service: AuthService = Depends(get_auth_service)) -> Claims:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: Claims = Depends(get_claims)): ...
    """
    return service.validate(bearer_token(request))


def tenant_signals(request: Request, service: AuthService = Depends(get_auth_service)) -> TenantSignals:
    return TenantSignals(
        explicit=request.headers.get(service.settings.tenant_header),
        route=request.path_params.get("company_id"),
    )


def require(policy: Policy) -> Callable[..., AuthorizationContext]:
    """Build a dependency enforcing policy for one route.

    Use as a FastAPI dependency:
        @router.get("/companies/{company_id}/members")
        def route(ctx: AuthorizationContext = Depends(require(LIST_MEMBERS))): ...
    """

    def _authorize(
        claims: Claims = Depends(get_claims),
        signals: TenantSignals = Depends(tenant_signals),
        service: AuthService = Depends(get_auth_service),
    ) -> AuthorizationContext:
        return service.authorize(claims, signals, policy)

    return _authorize
