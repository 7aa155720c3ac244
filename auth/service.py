"""
auth/service.py -- AuthService facade: the single entry point into the auth core.

Pattern: Facade over the component graph

    CredentialVerifier -> TokenIssuer            (login)
    TokenValidator                               (every protected request)
    RefreshCoordinator                           (token rotation)
    resolve_tenant -> PermissionResolver -> AuthorizationGuard

The API layer and the CLI construct one AuthService per process and call
nothing below it directly. Every collaborator is passed in (store, clock,
verifier), so tests can pin time and swap the credential backend.

Tenant and principal are always explicit parameters. Nothing here reads
request-scoped or thread-local state.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import timedelta

from auth.credentials import CredentialVerifier, hash_secret
from auth.errors import Forbidden
from auth.guard import AuthorizationContext, AuthorizationGuard, Policy
from auth.keys import SigningKeys
from auth.models import Claims, LoginResult, Principal, PrincipalSummary, TenantMembership, TokenPair
from auth.permissions import DEFAULT_ROLE_PERMISSIONS, PermissionResolver
from auth.refresh import RefreshCoordinator
from auth.store import AuthStore
from auth.tenancy import TenantSignals, resolve_tenant
from auth.tokens import TokenIssuer, TokenValidator
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("tenantgate.auth.service")


class AuthService:
    """Login, refresh, logout, validation and authorization for one deployment.

    Usage:
        service = AuthService(get_settings(), AuthStore(settings.database_url))
        result = service.login("alice@example.com", "secret")
        claims = service.validate(result.tokens.access_token)
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        clock: Clock = utc_now,
        verifier: CredentialVerifier | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        keys = SigningKeys.from_settings(settings)
        self.verifier = verifier or CredentialVerifier(store.get_principal_by_identifier)
        self.issuer = TokenIssuer(settings, keys, store, clock=clock)
        self.validator = TokenValidator(settings, keys, clock=clock)
        self.coordinator = RefreshCoordinator(settings, store, self.issuer, self.validator, clock=clock)
        self.permissions = PermissionResolver(store)
        self.guard = AuthorizationGuard(store, self.permissions)

        if store.seed_role_permissions(DEFAULT_ROLE_PERMISSIONS):
            logger.info("Seeded default role permissions")
        self.permissions.load()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, device: str | None = None) -> LoginResult:
        principal = self.verifier.verify(identifier, secret)
        memberships = self.store.list_memberships(principal.id)
        tokens = self.issuer.issue(principal, memberships, device=device)
        self.store.touch_last_login(principal.id)
        logger.info("Principal %s logged in", principal.id)
        return LoginResult(tokens=tokens, principal=self._summarize(principal, memberships))

    def refresh(self, access_token: str, refresh_token: str) -> TokenPair:
        return self.coordinator.redeem(access_token, refresh_token)

    def logout(self, principal_id: str, session_id: str | None = None) -> int:
        """Revoke refresh tokens of one session, or of every session when session_id is None.

        Access tokens already handed out stay valid until their exp.
        """
        revoked = self.store.revoke_refresh_tokens(principal_id, session_id=session_id)
        logger.info("Logout for principal %s revoked %d refresh token(s)", principal_id, revoked)
        return revoked

    def validate(self, access_token: str) -> Claims:
        return self.validator.validate(access_token)

    def purge_expired(self) -> int:
        retention = timedelta(minutes=self.settings.refresh_token_retention_minutes)
        removed = self.store.purge_refresh_tokens(retention)
        if removed:
            logger.info("Purged %d refresh token row(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Tenancy and authorization
    # ------------------------------------------------------------------

    def current_tenant(self, signals: TenantSignals, claims: Claims | None) -> str | None:
        return resolve_tenant(signals, claims)

    def permissions_for(self, principal_id: str, tenant_id: str) -> frozenset[str]:
        return self.permissions.effective_permissions(principal_id, tenant_id)

    def authorize(self, claims: Claims, signals: TenantSignals, policy: Policy) -> AuthorizationContext:
        return self.guard.authorize(claims, signals, policy)

    # ------------------------------------------------------------------
    # Principals and memberships
    # ------------------------------------------------------------------

    def create_principal(
        self, email: str, username: str, secret: str | None, display_name: str | None = None
    ) -> Principal:
        """Create a principal. Raises sqlalchemy.exc.IntegrityError on a duplicate email/username."""
        principal_id = self.store.create_principal(
            Principal(
                email=email,
                username=username,
                hashed_password=hash_secret(secret) if secret else None,
                display_name=display_name,
            )
        )
        logger.info("Created principal %s", principal_id)
        return self.store.get_principal(principal_id)

    def set_default_tenant(self, principal_id: str, tenant_id: str) -> None:
        """Make tenant_id the principal's default. Forbidden without an active membership.

        The new default reaches access tokens at the next login or refresh.
        """
        if not self.store.set_default_membership(principal_id, tenant_id):
            raise Forbidden()
        logger.info("Principal %s switched default company to %s", principal_id, tenant_id)

    def add_member(self, tenant_id: str, principal_id: str, role: str, is_default: bool = False) -> TenantMembership:
        """Grant principal_id a role in tenant_id.

        Raises sqlalchemy.exc.IntegrityError if the membership already exists.
        """
        self.store.add_membership(
            TenantMembership(principal_id=principal_id, tenant_id=tenant_id, role=role, is_default=is_default)
        )
        logger.info("Added principal %s to company %s as %s", principal_id, tenant_id, role)
        return self.store.get_membership(principal_id, tenant_id)

    def update_member(
        self, tenant_id: str, principal_id: str, role: str | None = None, is_active: bool | None = None
    ) -> TenantMembership | None:
        """Change role and/or active flag. Returns None if there is no such membership."""
        if not self.store.update_membership(principal_id, tenant_id, role=role, is_active=is_active):
            return None
        logger.info(
            "Updated membership of principal %s in company %s (role=%s, is_active=%s)",
            principal_id,
            tenant_id,
            role,
            is_active,
        )
        return self.store.get_membership(principal_id, tenant_id)

    def list_members(self, tenant_id: str) -> list[TenantMembership]:
        return self.store.list_tenant_members(tenant_id)

    def set_role_permissions(self, role: str, permissions: Iterable[str], tenant_id: str | None = None) -> frozenset[str]:
        """Replace a role's permission set and return the set now in effect for it."""
        self.permissions.set_role_permissions(role, permissions, tenant_id=tenant_id)
        logger.info("Role %s permissions replaced (company %s)", role, tenant_id or "global")
        return self.permissions.permissions_for_role(tenant_id, role)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _summarize(self, principal: Principal, memberships: list[TenantMembership]) -> PrincipalSummary:
        tenant_roles = {m.tenant_id: m.role for m in memberships if m.is_active}
        default_tenant = next((m.tenant_id for m in memberships if m.is_active and m.is_default), None)
        permissions = (
            self.permissions.permissions_for_role(default_tenant, tenant_roles.get(default_tenant))
            if default_tenant
            else frozenset()
        )
        return PrincipalSummary(
            id=principal.id,
            email=principal.email,
            username=principal.username,
            display_name=principal.display_name,
            default_tenant_id=default_tenant,
            tenant_roles=tenant_roles,
            permissions=permissions,
        )
