"""FastAPI dependency injection."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Annotated

from fastapi import Depends, HTTPException, Path, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from procurement_ledger.auth.keys import hash_api_key, parse_api_key
from procurement_ledger.auth.principal import Principal
from procurement_ledger.budget_ledger import BudgetLedger
from procurement_ledger.errors import TenantMismatchError, TenantNotFoundError
from procurement_ledger.sinks import DatabaseAuditSink
from procurement_ledger.storage.database import async_session, get_session
from procurement_ledger.storage.orm import APIKey, Tenant
from procurement_ledger.tenancy.binding import reconcile_tenant
from procurement_ledger.tenancy.context import bind_tenant
from procurement_ledger.tenancy.resolver import TenantResolver
from procurement_ledger.usage_report import UsageReporter

__all__ = [
    "bind_request_tenant",
    "get_audit_sink",
    "get_current_principal",
    "get_ledger",
    "get_session",
    "get_usage_reporter",
]

api_key_header = APIKeyHeader(name="X-API-Key")


_get_session = Depends(get_session)


async def get_current_principal(
    api_key: str = Security(api_key_header),
    session: AsyncSession = _get_session,
) -> Principal:
    """Authenticate request via API key, return the caller's principal.

    The key must be well formed and belong to an active key of the
    active tenant whose subdomain it carries.

    Raises:
        HTTPException 401: missing, malformed, invalid, inactive, or
            expired key.
    """
    parsed = parse_api_key(api_key)
    if parsed is None:
        raise HTTPException(status_code=401, detail="Invalid API key")

    stmt = (
        select(APIKey)
        .join(Tenant, APIKey.tenant_id == Tenant.id)
        .where(
            APIKey.key_hash == hash_api_key(api_key),
            APIKey.is_active.is_(True),
            Tenant.is_active.is_(True),
            Tenant.subdomain == parsed.subdomain,
        )
        .options(selectinload(APIKey.tenant))
    )
    result = await session.execute(stmt)
    api_key_record = result.scalar_one_or_none()

    if api_key_record is None:
        raise HTTPException(status_code=401, detail="Invalid API key")

    if (
        api_key_record.expires_at is not None
        and api_key_record.expires_at < datetime.now(UTC)
    ):
        raise HTTPException(status_code=401, detail="API key expired")

    return Principal(
        tenant_id=api_key_record.tenant_id,
        tenant_name=api_key_record.tenant.name,
        key_prefix=api_key_record.key_prefix,
    )


PrincipalDep = Annotated[Principal, Depends(get_current_principal)]


async def bind_request_tenant(
    principal: PrincipalDep,
    tenant: Annotated[str, Path(min_length=1, max_length=63)],
    session: AsyncSession = _get_session,
) -> AsyncIterator[uuid.UUID]:
    """Resolve the ``{tenant}`` path segment and bind it for the request.

    Everything running after this dependency (other dependencies and the
    endpoint) sees the tenant through ``current_tenant_id()``. The
    binding is removed when the request finishes.

    Raises:
        HTTPException 404: slug does not name an active tenant.
        HTTPException 403: slug names a tenant other than the caller's.
    """
    resolution = await TenantResolver(session).resolve(tenant)
    try:
        tenant_id = reconcile_tenant(resolution, principal.tenant_id)
    except TenantNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TenantMismatchError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    if tenant_id is None:
        # Neither the path nor the principal named a tenant.
        raise HTTPException(status_code=400, detail="Tenant could not be determined")

    with bind_tenant(tenant_id):
        yield tenant_id


TenantIdDep = Annotated[uuid.UUID, Depends(bind_request_tenant)]


def get_audit_sink() -> DatabaseAuditSink:
    return DatabaseAuditSink(async_session)


async def get_ledger(
    _tenant_id: TenantIdDep,
    principal: PrincipalDep,
    audit_sink: Annotated[DatabaseAuditSink, Depends(get_audit_sink)],
    session: AsyncSession = _get_session,
) -> BudgetLedger:
    """Ledger bound to the request session and the bound tenant."""
    return BudgetLedger(session, audit_sink=audit_sink, user_id=principal.user_id)


async def get_usage_reporter(
    _tenant_id: TenantIdDep,
    session: AsyncSession = _get_session,
) -> UsageReporter:
    return UsageReporter(session)
