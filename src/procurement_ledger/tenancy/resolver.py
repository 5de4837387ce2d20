"""Resolve the ``{tenant}`` path segment to a tenant id."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import StrEnum

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from procurement_ledger.storage.orm import Tenant

logger = structlog.get_logger()


class ResolutionState(StrEnum):
    """Per-request resolution state machine.

    ``UNRESOLVED -> RESOLVING -> RESOLVED | NOT_FOUND``
    """

    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"


@dataclass
class TenantResolution:
    slug: str | None
    state: ResolutionState = ResolutionState.UNRESOLVED
    tenant_id: uuid.UUID | None = None


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


class TenantResolver:
    """Look tenants up by subdomain, falling back to id.

    Not tenant-scoped: runs before any tenant is bound.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def resolve(self, slug: str | None) -> TenantResolution:
        """Resolve a slug to an active tenant.

        An absent slug stays ``UNRESOLVED``; the binding layer then
        relies on the principal alone.
        """
        resolution = TenantResolution(slug=slug)
        if not slug:
            return resolution

        resolution.state = ResolutionState.RESOLVING
        conditions = [Tenant.subdomain == slug]
        slug_id = _as_uuid(slug)
        if slug_id is not None:
            conditions.append(Tenant.id == slug_id)

        stmt = (
            select(Tenant.id)
            .where(or_(*conditions), Tenant.is_active.is_(True))
            # subdomain match wins over id match
            .order_by((Tenant.subdomain == slug).desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        tenant_id = result.scalar_one_or_none()

        if tenant_id is None:
            resolution.state = ResolutionState.NOT_FOUND
            logger.info("tenant_not_found", slug=slug)
            return resolution

        resolution.state = ResolutionState.RESOLVED
        resolution.tenant_id = tenant_id
        return resolution
