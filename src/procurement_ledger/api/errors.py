"""Translate ledger exceptions into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException

from procurement_ledger.errors import (
    BudgetNotFoundError,
    DuplicateBudgetError,
    FiscalYearMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerError,
    OrgUnitNotFoundError,
    TenantMismatchError,
    TenantNotFoundError,
    TenantUnboundError,
)

STATUS_BY_ERROR: tuple[tuple[type[LedgerError], int], ...] = (
    (BudgetNotFoundError, 404),
    (OrgUnitNotFoundError, 404),
    (TenantNotFoundError, 404),
    (DuplicateBudgetError, 409),
    (InsufficientFundsError, 422),
    (FiscalYearMismatchError, 422),
    (InvalidAmountError, 422),
    (TenantMismatchError, 403),
    (TenantUnboundError, 400),
)


def ledger_http_error(exc: LedgerError) -> HTTPException:
    """HTTPException for a ledger failure; unknown subclasses map to 400."""
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
