"""Domain-specific exceptions for the budget ledger and tenancy layer."""

from __future__ import annotations

import uuid
from decimal import Decimal


class LedgerError(Exception):
    """Base class for all user-facing ledger failures."""


class DuplicateBudgetError(LedgerError):
    """A budget already exists for this org unit and fiscal year."""

    def __init__(self, fiscal_year: str, org_unit_id: uuid.UUID) -> None:
        self.fiscal_year = fiscal_year
        self.org_unit_id = org_unit_id
        super().__init__(
            f"Budget already exists for org unit {org_unit_id} "
            f"and fiscal year {fiscal_year}"
        )


class OrgUnitNotFoundError(LedgerError):
    """Org unit does not exist within the current tenant."""

    def __init__(self, org_unit_id: uuid.UUID) -> None:
        self.org_unit_id = org_unit_id
        super().__init__(f"Organization unit {org_unit_id} not found")


class BudgetNotFoundError(LedgerError):
    """Budget does not exist within the current tenant (or is deleted)."""

    def __init__(self, budget_id: uuid.UUID) -> None:
        self.budget_id = budget_id
        super().__init__(f"Budget {budget_id} not found")


class InsufficientFundsError(LedgerError):
    """Requested amount exceeds the budget's available balance."""

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient budget. Available: {available}, Requested: {requested}"
        )


class FiscalYearMismatchError(LedgerError):
    """Transfer attempted between budgets of different fiscal years."""

    def __init__(self, source_year: str, target_year: str) -> None:
        self.source_year = source_year
        self.target_year = target_year
        super().__init__(
            "Cannot transfer between different fiscal years "
            f"({source_year} -> {target_year})"
        )


class InvalidAmountError(LedgerError):
    """Amount is non-positive or inconsistent with its line items."""


# ── Tenancy ──


class TenantMismatchError(LedgerError):
    """Resolved tenant differs from the authenticated principal's tenant.

    The message is fixed and never names either tenant.
    """

    def __init__(self) -> None:
        super().__init__("Tenant mismatch")


class TenantUnboundError(LedgerError):
    """Tenant-scoped operation attempted without a bound tenant."""

    def __init__(self, operation: str = "operation") -> None:
        self.operation = operation
        super().__init__(f"No tenant bound for tenant-scoped {operation}")


class TenantNotFoundError(LedgerError):
    """Tenant slug did not resolve to an active tenant."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__("Tenant not found")
