"""CLI for tenant, API key and org unit provisioning.

Usage::

    uv run python -m scripts.manage_tenant <command> [options]

Commands:
    create-tenant       Create a new tenant
    create-key          Generate an API key for a tenant
    list-tenants        List all tenants
    list-keys           List API keys for a tenant
    revoke-key          Revoke an API key by prefix
    deactivate-tenant   Deactivate a tenant (all keys become invalid)
    create-org-unit     Create an org unit inside a tenant's hierarchy

Tenants are addressed by subdomain, the slug used in API paths.
"""

from __future__ import annotations

import argparse
import asyncio
import re
import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import NoReturn

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procurement_ledger.auth.keys import KEY_ENVIRONMENTS, generate_api_key
from procurement_ledger.config import settings
from procurement_ledger.errors import LedgerError
from procurement_ledger.models.budget import OrgUnitType
from procurement_ledger.storage.database import async_session
from procurement_ledger.storage.orm import APIKey, OrgUnit, Tenant
from procurement_ledger.storage.repositories import OrgUnitRepository
from procurement_ledger.tenancy.context import run_with_tenant

SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def get_sync_session() -> Session:
    """Create sync session for CLI operations.

    Uses the same database URL as the async app (psycopg v3
    handles both sync and async natively).
    """
    engine = create_engine(settings.database_url)
    return Session(engine)


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(1)


def _get_tenant(session: Session, subdomain: str) -> Tenant:
    tenant = session.execute(
        select(Tenant).where(Tenant.subdomain == subdomain)
    ).scalar_one_or_none()
    if tenant is None:
        _fail(f"Tenant not found: {subdomain}")
    return tenant


def create_tenant(args: argparse.Namespace) -> None:
    """Create a new tenant."""
    if not SUBDOMAIN_RE.match(args.subdomain):
        _fail(f"Invalid subdomain: {args.subdomain}")

    with get_sync_session() as session:
        existing = session.execute(
            select(Tenant).where(
                (Tenant.name == args.name) | (Tenant.subdomain == args.subdomain)
            )
        ).scalar_one_or_none()
        if existing is not None:
            _fail(f"Tenant already exists: {args.name} ({args.subdomain})")

        tenant = Tenant(name=args.name, subdomain=args.subdomain)
        session.add(tenant)
        session.commit()
        print(f"Tenant created: {args.name} [{args.subdomain}] (id: {tenant.id})")


def create_key(args: argparse.Namespace) -> None:
    """Generate an API key for a tenant."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)

        issued = generate_api_key(tenant.subdomain, args.environment)
        expires_at = (
            datetime.now(UTC) + timedelta(days=args.expires_days)
            if args.expires_days
            else None
        )

        api_key = APIKey(
            tenant_id=tenant.id,
            key_hash=issued.key_hash,
            key_prefix=issued.key_prefix,
            label=args.label,
            expires_at=expires_at,
        )
        session.add(api_key)
        session.commit()

        print(f'API key created for "{args.tenant}":')
        print(f"   Key:     {issued.full_key}")
        print(f"   Prefix:  {issued.key_prefix}")
        print(f"   Label:   {args.label}")
        if expires_at is not None:
            print(f"   Expires: {expires_at.date().isoformat()}")
        print()
        print("Save this key now -- it cannot be retrieved later!")


def list_tenants(_args: argparse.Namespace) -> None:
    """List all tenants with key counts."""
    with get_sync_session() as session:
        stmt = (
            select(
                Tenant.name,
                Tenant.subdomain,
                Tenant.is_active,
                func.count(APIKey.id).label("key_count"),
            )
            .outerjoin(APIKey, Tenant.id == APIKey.tenant_id)
            .group_by(Tenant.id)
            .order_by(Tenant.name)
        )
        rows = session.execute(stmt).all()

        if not rows:
            print("No tenants found.")
            return

        print("Tenants:")
        for i, row in enumerate(rows, 1):
            status = "active" if row.is_active else "inactive"
            keys = row.key_count
            print(
                f"  {i}. {row.name} [{row.subdomain}] "
                f"({status}, {keys} key{'s' if keys != 1 else ''})"
            )


def list_keys(args: argparse.Namespace) -> None:
    """List API keys for a tenant."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)

        keys = (
            session.execute(
                select(APIKey)
                .where(APIKey.tenant_id == tenant.id)
                .order_by(APIKey.created_at)
            )
            .scalars()
            .all()
        )

        if not keys:
            print(f'No keys for "{args.tenant}".')
            return

        print(f'Keys for "{args.tenant}":')
        for i, key in enumerate(keys, 1):
            status = "active" if key.is_active else "revoked"
            print(f"  {i}. {key.key_prefix} [{key.label}] {status}")


def revoke_key(args: argparse.Namespace) -> None:
    """Revoke an API key by its prefix."""
    with get_sync_session() as session:
        key = session.execute(
            select(APIKey).where(APIKey.key_prefix == args.prefix)
        ).scalar_one_or_none()
        if key is None:
            _fail(f"Key not found: {args.prefix}")

        if not key.is_active:
            _fail(f"Key already revoked: {args.prefix}")

        key.is_active = False
        session.commit()
        print(f"Key revoked: {args.prefix}")


def deactivate_tenant(args: argparse.Namespace) -> None:
    """Deactivate a tenant (all keys become invalid)."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)

        if not tenant.is_active:
            _fail(f"Tenant already inactive: {args.tenant}")

        tenant.is_active = False
        session.commit()
        print(f"Tenant deactivated: {args.tenant}")


async def _insert_org_unit(args: argparse.Namespace) -> OrgUnit:
    """Create the unit through the scoped repository of the bound tenant."""
    async with async_session() as session:
        repo = OrgUnitRepository(session)
        parent_id = None
        if args.parent_code:
            parent = await repo.get_by_code(args.parent_code)
            if parent is None:
                msg = f"Parent org unit not found: {args.parent_code}"
                raise LedgerError(msg)
            parent_id = parent.id
        unit = await repo.create_unit(
            code=args.code,
            name=args.name,
            type=OrgUnitType(args.type),
            parent_id=parent_id,
        )
        await session.commit()
        return unit


def create_org_unit(args: argparse.Namespace) -> None:
    """Create an org unit; its level is derived from the parent."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)
        tenant_id = tenant.id

    try:
        unit = asyncio.run(run_with_tenant(tenant_id, _insert_org_unit, args))
    except LedgerError as exc:
        _fail(str(exc))
    except IntegrityError:
        _fail(f"Org unit code already exists: {args.code}")

    print(
        f"Org unit created: {unit.code} ({unit.type}, level {unit.level}) "
        f"(id: {unit.id})"
    )


def main() -> None:
    """Parse arguments and dispatch to command handler."""
    parser = argparse.ArgumentParser(description="Tenant provisioning CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # create-tenant
    p = sub.add_parser("create-tenant", help="Create a new tenant")
    p.add_argument("--name", required=True, help="Tenant display name")
    p.add_argument("--subdomain", required=True, help="Tenant slug used in URLs")

    # create-key
    p = sub.add_parser("create-key", help="Generate API key for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant subdomain")
    p.add_argument("--label", default="default", help="Key label")
    p.add_argument("--expires-days", type=int, default=None, help="Key lifetime")
    p.add_argument(
        "--environment",
        choices=sorted(KEY_ENVIRONMENTS),
        default="live",
        help="Key environment",
    )

    # list-tenants
    sub.add_parser("list-tenants", help="List all tenants")

    # list-keys
    p = sub.add_parser("list-keys", help="List API keys for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant subdomain")

    # revoke-key
    p = sub.add_parser("revoke-key", help="Revoke an API key")
    p.add_argument("--prefix", required=True, help="Key prefix to revoke")

    # deactivate-tenant
    p = sub.add_parser("deactivate-tenant", help="Deactivate a tenant")
    p.add_argument("--tenant", required=True, help="Tenant subdomain")

    # create-org-unit
    p = sub.add_parser("create-org-unit", help="Create an org unit")
    p.add_argument("--tenant", required=True, help="Tenant subdomain")
    p.add_argument("--code", required=True, help="Unit code, unique per tenant")
    p.add_argument("--name", required=True, help="Unit name")
    p.add_argument(
        "--type",
        required=True,
        choices=[t.value for t in OrgUnitType],
        help="Unit type",
    )
    p.add_argument("--parent-code", default=None, help="Code of the parent unit")

    args = parser.parse_args()
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "create-tenant": create_tenant,
        "create-key": create_key,
        "list-tenants": list_tenants,
        "list-keys": list_keys,
        "revoke-key": revoke_key,
        "deactivate-tenant": deactivate_tenant,
        "create-org-unit": create_org_unit,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
