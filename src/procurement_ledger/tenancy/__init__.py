"""Tenant isolation: request binding, slug resolution, reconciliation.

Note: ``TenantResolver`` (``tenancy.resolver``) and ``reconcile_tenant``
(``tenancy.binding``) are NOT re-exported here; they pull in the ORM.
Import them directly.
"""

from procurement_ledger.tenancy.context import (
    bind_tenant,
    current_tenant_id,
    require_tenant_id,
    run_with_tenant,
)

__all__ = ["bind_tenant", "current_tenant_id", "require_tenant_id", "run_with_tenant"]
