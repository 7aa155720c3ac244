"""
api/routes/v1/auth.py -- Session and identity REST endpoints.

Routes:
  POST /api/v1/auth/login            -- identifier + password; returns a token pair
  POST /api/v1/auth/refresh          -- exchange (access, refresh) for a new pair
  POST /api/v1/auth/logout           -- revoke this session's (or all) refresh tokens; 204
  GET  /api/v1/auth/me               -- what the presented access token says
  GET  /api/v1/auth/permissions      -- caller's permissions in the active company
  PUT  /api/v1/auth/default-company  -- switch the caller's default company; 204

Security:
  [H2] POST /login and POST /refresh are rate-limited per IP (settings).
  [C1] Login goes through AuthService.login(), which runs the timing-equalized
       CredentialVerifier -- never look principals up inline here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Logout only revokes refresh tokens; the presented access token keeps
  working until its exp.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    DefaultCompanyRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    PermissionsResponse,
    PrincipalResponse,
    RefreshRequest,
    TokenResponse,
)
from auth.dependencies import get_auth_service, get_claims, require
from auth.guard import AuthorizationContext, Policy
from auth.models import Claims, PrincipalSummary, TokenPair
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:          public -- the expired access token travels in the body
# - POST /api/v1/auth/logout:           requires a valid access token (get_claims)
# - GET  /api/v1/auth/me:               requires a valid access token (get_claims)
# - GET  /api/v1/auth/permissions:      requires company access (header or default company)
# - PUT  /api/v1/auth/default-company:  requires a valid access token + active membership
router = APIRouter()

COMPANY_ACCESS = Policy()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _refresh_limit() -> str:
    return get_settings().refresh_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email or username and password; return a token pair.

    Unknown identifier, wrong password and deactivated account all produce
    the same 401 "bad_credentials" response [C1].
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(body.identifier, body.password, device=body.device)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            tokens=_token_response(result.tokens, request),
            principal=_principal_response(result.principal),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(_refresh_limit)  # [H2]
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate a refresh token. The presented refresh token can never be used again.

    The access token may be expired but must be correctly signed and belong
    to the refresh token's owner.
    """
    service: AuthService = request.app.state.auth_service
    pair = service.refresh(body.access_token, body.refresh_token)
    resp = JSONResponse(status_code=200, content=_token_response(pair, request).model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", status_code=204)
def logout(
    body: Optional[LogoutRequest] = None,
    claims: Claims = Depends(get_claims),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Revoke the refresh tokens of the current session, or of every session."""
    all_sessions = body is not None and body.all_sessions
    service.logout(claims.principal_id, session_id=None if all_sessions else claims.session_id)
    return Response(status_code=204)


@router.get("/auth/me", response_model=MeResponse)
def me(claims: Claims = Depends(get_claims)) -> MeResponse:
    """Return the identity and company snapshot carried by the access token."""
    return MeResponse(
        principal_id=claims.principal_id,
        username=claims.username,
        session_id=claims.session_id,
        default_company_id=claims.default_tenant_id,
        companies=claims.tenant_roles,
        expires_at=claims.expires_at,
    )


@router.get("/auth/permissions", response_model=PermissionsResponse)
def my_permissions(
    ctx: AuthorizationContext = Depends(require(COMPANY_ACCESS)),
    service: AuthService = Depends(get_auth_service),
) -> PermissionsResponse:
    """Return the caller's permissions in the company from the header, else the default company.

    Permissions are re-derived from the current membership, not the token.
    """
    membership = service.store.get_membership(ctx.principal_id, ctx.tenant_id)
    return PermissionsResponse(
        company_id=ctx.tenant_id,
        role=membership.role if membership is not None else None,
        permissions=sorted(service.permissions_for(ctx.principal_id, ctx.tenant_id)),
    )


@router.put("/auth/default-company", status_code=204)
def set_default_company(
    body: DefaultCompanyRequest,
    claims: Claims = Depends(get_claims),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Make body.company_id the caller's default company.

    403 unless the caller has an active membership there. Tokens pick up the
    new default at the next refresh.
    """
    service.set_default_tenant(claims.principal_id, body.company_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(pair: TokenPair, request: Request) -> TokenResponse:
    ttl_minutes = request.app.state.auth_service.settings.access_token_expire_minutes
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=ttl_minutes * 60,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


def _principal_response(summary: PrincipalSummary) -> PrincipalResponse:
    return PrincipalResponse(
        id=summary.id,
        email=summary.email,
        username=summary.username,
        display_name=summary.display_name,
        default_company_id=summary.default_tenant_id,
        companies=summary.tenant_roles,
        permissions=sorted(summary.permissions),
    )
