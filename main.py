#!/usr/bin/env python3
"""
TenantGate -- admin CLI for the multi-tenant auth store.

Usage:
  python main.py create-user alice@example.com alice
  python main.py create-user bob@example.com bob --password 's3cret' --display-name "Bob B."
  python main.py assign alice@example.com acme Admin --default
  python main.py set-role-permissions manager users.view reports.view --company acme
  python main.py set-role-permissions manager --company acme --clear
  python main.py deactivate-user bob
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth store (default: tenantgate_auth.db next to this file).
  SECRET_KEY    Required unless DEBUG=true. Keys refresh-token hashing and HS* signing.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.service import AuthService
from auth.store import AuthStore
from core.config import get_settings


def _resolve_principal_id(service: AuthService, identifier: str) -> Optional[str]:
    principal = service.store.get_principal_by_identifier(identifier)
    if principal is None:
        print(f"  [!] No principal matches '{identifier}'.")
        return None
    return principal.id


def _create_user(service: AuthService, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    try:
        principal = service.create_principal(args.email, args.username, password, display_name=args.display_name)
    except IntegrityError:
        print("  [!] A principal with that email or username already exists.")
        return 1
    print(f"  Created principal {principal.id} ({principal.username})")
    return 0


def _assign(service: AuthService, args: argparse.Namespace) -> int:
    principal_id = _resolve_principal_id(service, args.identifier)
    if principal_id is None:
        return 1
    existing = service.store.get_membership(principal_id, args.company)
    if existing is None:
        service.add_member(args.company, principal_id, args.role, is_default=args.default)
    else:
        service.update_member(args.company, principal_id, role=args.role, is_active=True)
        if args.default:
            service.set_default_tenant(principal_id, args.company)
    print(f"  {args.identifier} is {args.role} in company {args.company}")
    return 0


def _set_role_permissions(service: AuthService, args: argparse.Namespace) -> int:
    if not args.permissions and not args.clear:
        print("  [!] Give at least one permission, or --clear to remove the role's grants.")
        return 1
    effective = service.set_role_permissions(args.role, [] if args.clear else args.permissions, tenant_id=args.company)
    scope = f"company {args.company}" if args.company else "global default"
    print(f"  {args.role} ({scope}): {', '.join(sorted(effective)) or '(none)'}")
    return 0


def _deactivate_user(service: AuthService, args: argparse.Namespace) -> int:
    principal_id = _resolve_principal_id(service, args.identifier)
    if principal_id is None:
        return 1
    service.store.deactivate_principal(principal_id)
    print(f"  Deactivated {args.identifier}; refresh tokens revoked.")
    return 0


def _purge(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.purge_expired()
    print(f"  Purged {removed} refresh token row(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantgate",
        description="Administer principals, company memberships and role permissions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        help="SQLAlchemy URL of the auth store (overrides DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-user", help="Create a principal that can log in with a password")
    p.add_argument("email")
    p.add_argument("username")
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.add_argument("--display-name", default=None)
    p.set_defaults(handler=_create_user)

    p = sub.add_parser("assign", help="Give a principal a role in a company (creates or updates the membership)")
    p.add_argument("identifier", help="Email or username")
    p.add_argument("company", help="Company id")
    p.add_argument("role", help="Role name, e.g. Admin, Manager, Accountant, Employee, Viewer")
    p.add_argument("--default", action="store_true", help="Make this the principal's default company")
    p.set_defaults(handler=_assign)

    p = sub.add_parser("set-role-permissions", help="Replace a role's permission set")
    p.add_argument("role")
    p.add_argument("permissions", nargs="*", metavar="PERMISSION")
    p.add_argument("--company", default=None, help="Set a company override instead of the global default")
    p.add_argument("--clear", action="store_true", help="Remove the role's grants for this scope")
    p.set_defaults(handler=_set_role_permissions)

    p = sub.add_parser("deactivate-user", help="Disable a principal and revoke its refresh tokens")
    p.add_argument("identifier", help="Email or username")
    p.set_defaults(handler=_deactivate_user)

    p = sub.add_parser("purge", help="Delete expired and long-closed refresh tokens")
    p.set_defaults(handler=_purge)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    store = AuthStore(db_url=args.database_url or settings.database_url)
    try:
        service = AuthService(settings, store)
        return args.handler(service, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
