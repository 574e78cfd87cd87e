"""
Operator CLI for granting console roles.

Usage:
    python -m civic_console.provision admin EMAIL PASSWORD --name NAME
    python -m civic_console.provision supervisor EMAIL PASSWORD --dept roads --name NAME
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from typing import Optional

from civic_console import settings
from civic_console.database import ReportStore, get_store
from civic_console.exceptions import AuthenticationError
from civic_console.roles import IdentityProvider
from civic_console.schemas import DEPARTMENTS, AdminRecord, Identity, SupervisorRecord


def _identity(store: ReportStore, email: str, password: str, name: Optional[str]) -> Identity:
    provider = IdentityProvider(store)
    try:
        return provider.register(email, password, name)
    except AuthenticationError:
        # already registered: the password must match before a role is granted
        return provider.authenticate(email, password)


def create_admin(store: ReportStore, email: str, password: str, name: Optional[str] = None,
                 role: str = "admin") -> str:
    identity = _identity(store, email, password, name)
    record = AdminRecord(role=role, name=name, email=email)
    store.set_document(settings.ADMINS_COLLECTION, identity.uid, {
        **record.model_dump(),
        "createdAt": datetime.now(timezone.utc),
    })
    return identity.uid


def create_supervisor(store: ReportStore, email: str, password: str, name: str, dept: str,
                      phone: Optional[str] = None) -> str:
    identity = _identity(store, email, password, name)
    record = SupervisorRecord(name=name, email=email, dept=dept, phone=phone)
    store.set_document(settings.SUPERVISORS_COLLECTION, identity.uid, {
        **record.model_dump(exclude_none=True),
        "createdAt": datetime.now(timezone.utc),
    })
    return identity.uid


def cmd_admin(args: argparse.Namespace) -> int:
    uid = create_admin(get_store(), args.email, args.password, args.name, args.role)
    print(f"Added admin document for: {args.email} ({uid})")
    return 0


def cmd_supervisor(args: argparse.Namespace) -> int:
    uid = create_supervisor(get_store(), args.email, args.password, args.name, args.dept, args.phone)
    print(f"Added supervisor document for: {args.email} ({uid}, dept={args.dept})")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Grant console roles",
        prog="python -m civic_console.provision",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    admin_parser = subparsers.add_parser("admin", help="Create or promote an admin")
    admin_parser.add_argument("email")
    admin_parser.add_argument("password")
    admin_parser.add_argument("--name", default=None)
    admin_parser.add_argument("--role", choices=["admin", "superadmin"], default="admin")
    admin_parser.set_defaults(func=cmd_admin)

    sup_parser = subparsers.add_parser("supervisor", help="Create or promote a supervisor")
    sup_parser.add_argument("email")
    sup_parser.add_argument("password")
    sup_parser.add_argument("--name", required=True)
    sup_parser.add_argument("--dept", choices=DEPARTMENTS, required=True)
    sup_parser.add_argument("--phone", default=None)
    sup_parser.set_defaults(func=cmd_supervisor)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except AuthenticationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
