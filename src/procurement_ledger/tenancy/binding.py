"""Reconcile the path-resolved tenant with the caller's tenant claim."""

from __future__ import annotations

import uuid

import structlog

from procurement_ledger.errors import TenantMismatchError, TenantNotFoundError
from procurement_ledger.tenancy.resolver import ResolutionState, TenantResolution

logger = structlog.get_logger()


def reconcile_tenant(
    resolution: TenantResolution,
    principal_tenant_id: uuid.UUID | None,
) -> uuid.UUID | None:
    """Decide which tenant a request runs under.

    ============  =============  =================================
    resolved      principal      outcome
    ============  =============  =================================
    A             A              A
    A             B              ``TenantMismatchError`` (terminal)
    A             --             A
    --            B              B
    --            --             None (unbound)
    ============  =============  =================================

    Raises:
        TenantNotFoundError: The slug was given but matched no tenant.
        TenantMismatchError: Both ids present and different.
    """
    if resolution.state == ResolutionState.NOT_FOUND:
        raise TenantNotFoundError(resolution.slug or "")

    resolved = resolution.tenant_id
    if resolved is not None and principal_tenant_id is not None:
        if resolved != principal_tenant_id:
            # Only the slug is logged; the caller gets a fixed message.
            logger.warning("tenant_mismatch", slug=resolution.slug)
            raise TenantMismatchError()
        return resolved

    return resolved if resolved is not None else principal_tenant_id
