"""
api/routes/v1/companies.py -- Company-scoped permission and membership endpoints.

Routes:
  GET   /api/v1/companies/{company_id}/permissions                 -- caller's permissions there
  GET   /api/v1/companies/{company_id}/members                     -- list memberships
  POST  /api/v1/companies/{company_id}/members                     -- add a principal
  PATCH /api/v1/companies/{company_id}/members/{principal_id}      -- change role / is_active
  PUT   /api/v1/companies/{company_id}/roles/{role}/permissions    -- company override for a role

Every route runs the AuthorizationGuard through require(policy). The
{company_id} path parameter is a route-scoped tenant signal: an X-Company-Id
header naming a different company is rejected with 403.

Security:
  Sensitive policies re-read the caller's membership from the store, so a
  demoted admin loses member management immediately, not at token refresh.
  [M4] PATCH blocks changes to the caller's own membership and removal of the
       company's last active admin.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.exc import IntegrityError

from api.models import (
    ROLE_PATTERN,
    MemberCreate,
    MemberPatch,
    MemberResponse,
    PermissionsResponse,
    RolePermissionsResponse,
    RolePermissionsUpdate,
)
from auth.dependencies import get_auth_service, require
from auth.guard import AuthorizationContext, Policy
from auth.models import TenantMembership
from auth.permissions import normalize_role
from auth.service import AuthService

# Auth policy (all routes require a valid token and membership in {company_id}):
# - GET   .../permissions:             any active member
# - GET   .../members:                 role Admin or Manager + users.view
# - POST  .../members:                 users.manage (sensitive)
# - PATCH .../members/{principal_id}:  users.manage (sensitive)
# - PUT   .../roles/{role}/permissions: role Admin + settings.update (sensitive)
router = APIRouter()

COMPANY_MEMBER = Policy()
LIST_MEMBERS = Policy(roles=("Admin", "Manager"), permission="users.view")
MANAGE_MEMBERS = Policy(permission="users.manage", sensitive=True)
EDIT_ROLE_PERMISSIONS = Policy(roles=("Admin",), permission="settings.update", sensitive=True)

_ADMIN_ROLE = "admin"


@router.get("/companies/{company_id}/permissions", response_model=PermissionsResponse)
def company_permissions(
    company_id: str,
    ctx: AuthorizationContext = Depends(require(COMPANY_MEMBER)),
    service: AuthService = Depends(get_auth_service),
) -> PermissionsResponse:
    """Return the caller's effective permissions in company_id, from the current membership."""
    membership = service.store.get_membership(ctx.principal_id, company_id)
    return PermissionsResponse(
        company_id=company_id,
        role=membership.role if membership is not None else None,
        permissions=sorted(service.permissions_for(ctx.principal_id, company_id)),
    )


@router.get("/companies/{company_id}/members", response_model=list[MemberResponse])
def list_members(
    company_id: str,
    ctx: AuthorizationContext = Depends(require(LIST_MEMBERS)),
    service: AuthService = Depends(get_auth_service),
) -> list[MemberResponse]:
    return [_member_to_response(m) for m in service.list_members(company_id)]


@router.post("/companies/{company_id}/members", response_model=MemberResponse, status_code=201)
def add_member(
    company_id: str,
    body: MemberCreate,
    ctx: AuthorizationContext = Depends(require(MANAGE_MEMBERS)),
    service: AuthService = Depends(get_auth_service),
) -> MemberResponse:
    """Grant an existing principal a role in company_id.

    The new role reaches the principal's access tokens at their next login
    or refresh; sensitive checks see it immediately.
    """
    principal = service.store.get_principal_by_identifier(body.identifier)
    if principal is None or not principal.is_active:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Principal not found."},
        )
    try:
        membership = service.add_member(company_id, principal.id, body.role, is_default=body.is_default)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "conflict",
                "message": "Principal is already a member of this company. Use PATCH to change it.",
            },
        ) from exc
    return _member_to_response(membership)


@router.patch("/companies/{company_id}/members/{principal_id}", response_model=MemberResponse)
def update_member(
    company_id: str,
    principal_id: str,
    body: MemberPatch,
    ctx: AuthorizationContext = Depends(require(MANAGE_MEMBERS)),
    service: AuthService = Depends(get_auth_service),
) -> MemberResponse:
    """Change a member's role or active flag.

    [M4] Prevents:
      - Changing the caller's own membership (accidental self-lockout).
      - Removing the last active admin of the company.
    """
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    target = service.store.get_membership(principal_id, company_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Membership not found."},
        )

    if principal_id == ctx.principal_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_modification", "message": "You cannot change your own membership."},
        )

    loses_admin = body.is_active is False or (body.role is not None and normalize_role(body.role) != _ADMIN_ROLE)
    if target.is_active and normalize_role(target.role) == _ADMIN_ROLE and loses_admin:
        active_admins = [
            m for m in service.list_members(company_id) if m.is_active and normalize_role(m.role) == _ADMIN_ROLE
        ]
        if len(active_admins) <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot remove the last active admin of this company."},
            )

    updated = service.update_member(company_id, principal_id, role=body.role, is_active=body.is_active)
    return _member_to_response(updated)


@router.put("/companies/{company_id}/roles/{role}/permissions", response_model=RolePermissionsResponse)
def set_role_permissions(
    company_id: str,
    body: RolePermissionsUpdate,
    role: str = Path(pattern=ROLE_PATTERN),
    ctx: AuthorizationContext = Depends(require(EDIT_ROLE_PERMISSIONS)),
    service: AuthService = Depends(get_auth_service),
) -> RolePermissionsResponse:
    """Replace the permission set of role inside company_id.

    The override is authoritative for this company; an empty list removes it
    and the global default applies again.
    """
    effective = service.set_role_permissions(role, body.permissions, tenant_id=company_id)
    return RolePermissionsResponse(company_id=company_id, role=normalize_role(role), permissions=sorted(effective))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _member_to_response(membership: TenantMembership | None) -> MemberResponse:
    if membership is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Membership not found after write."},
        )
    return MemberResponse(
        principal_id=membership.principal_id,
        company_id=membership.tenant_id,
        role=membership.role,
        is_active=membership.is_active,
        is_default=membership.is_default,
        joined_at=membership.joined_at,
        left_at=membership.left_at,
    )
