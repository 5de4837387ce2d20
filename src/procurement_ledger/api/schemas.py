"""Request/response schemas for the API layer."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from procurement_ledger.models.budget import (
    AllocationTarget,
    BudgetType,
    DeductionItem,
    DocumentType,
    TransferType,
)

# --- Budget ---


class BudgetCreateRequest(BaseModel):
    """Request body for ``POST /{tenant}/budgets``."""

    fiscal_year: str = Field(..., min_length=4, max_length=10)
    org_unit_id: uuid.UUID
    total_amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    type: BudgetType
    config_id: str | None = Field(default=None, max_length=100)


class BudgetResponse(BaseModel):
    """Budget with its current balance."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    fiscal_year: str
    org_unit_id: uuid.UUID
    type: BudgetType
    total_amount: Decimal
    available_amount: Decimal
    config_id: str | None
    transfer_origin_id: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class BudgetListResponse(BaseModel):
    """Response for ``GET /{tenant}/budgets``."""

    items: list[BudgetResponse]
    total: int = Field(description="Number of budgets matching the filters.")


# --- Allocation ---


class AllocateRequest(BaseModel):
    """Request body for ``POST /{tenant}/budgets/{id}/allocate``.

    Example::

        {
            "allocations": [
                {"org_unit_id": "...", "amount": "5000000.00"},
                {"org_unit_id": "...", "amount": "3000000.00"}
            ],
            "reason": "Q1 distribution"
        }
    """

    model_config = ConfigDict(populate_by_name=True)

    allocations: list[AllocationTarget] = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=2000)
    trace_id: str | None = Field(
        default=None,
        alias="traceId",
        max_length=100,
        description="Shared trace id; generated when omitted.",
    )


class AllocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    budget_id: uuid.UUID
    from_org_unit_id: uuid.UUID
    to_org_unit_id: uuid.UUID
    amount: Decimal
    reason: str | None
    trace_id: str
    allocated_at: datetime


class AllocateResponse(BaseModel):
    budget: BudgetResponse
    trace_id: str
    allocations: list[AllocationResponse]


# --- Transfer ---


class TransferRequest(BaseModel):
    """Request body for ``POST /{tenant}/budgets/transfer``.

    ``transfer_type`` is derived from the org unit levels when omitted.
    """

    source_budget_id: uuid.UUID
    target_budget_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    transfer_type: TransferType | None = None
    trace_flag: bool = True
    approval_chain: list[str] | None = None


class TransferResponse(BaseModel):
    """Committed transfer; ``trace_id`` is what consumption lines carry."""

    transfer_id: uuid.UUID
    trace_id: str
    amount: Decimal
    transfer_type: TransferType
    source: BudgetResponse
    target: BudgetResponse


# --- Deduction ---


class DeductRequest(BaseModel):
    """Request body for ``POST /{tenant}/budgets/{id}/deduct``.

    Without ``items`` the amount is booked as a single header line.
    """

    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    document_type: DocumentType
    document_id: str = Field(..., min_length=1, max_length=100)
    items: list[DeductionItem] = Field(default_factory=list)
    transfer_trace_id: str | None = Field(default=None, max_length=100)


class ConsumptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    budget_id: uuid.UUID
    document_type: DocumentType
    document_id: str
    item_number: int
    consumed_amount: Decimal
    budget_allocation_id: uuid.UUID | None
    transfer_trace_id: str | None


class DeductResponse(BaseModel):
    budget: BudgetResponse
    charged: Decimal = Field(
        description="Net balance change applied by this call (0 on resubmission)."
    )
    lines: list[ConsumptionResponse]
