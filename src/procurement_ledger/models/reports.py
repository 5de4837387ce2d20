"""Usage report schemas for budget traceability."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

from procurement_ledger.models.budget import DocumentType, OrgUnitType


class OrgUnitSummary(BaseModel):
    id: uuid.UUID
    code: str
    name: str
    type: OrgUnitType


class AllocationLine(BaseModel):
    allocation_id: uuid.UUID
    to_org_unit_id: uuid.UUID
    to_org_unit: str
    amount: Decimal
    reason: str | None
    trace_id: str
    allocated_at: datetime


class TransferLine(BaseModel):
    """Transfer seen from the reported budget's side."""

    direction: Literal["IN", "OUT"]
    transfer_id: uuid.UUID
    counterparty_budget_id: uuid.UUID
    counterparty_org_unit: str
    amount: Decimal
    transferred_at: datetime
    trace_id: str


class ConsumptionLine(BaseModel):
    item_number: int
    consumed_amount: Decimal
    budget_allocation_id: uuid.UUID | None
    transfer_trace_id: str | None
    updated_at: datetime


class DocumentUsage(BaseModel):
    """Consumption lines grouped per procurement document."""

    document_type: DocumentType
    document_id: str
    amount: Decimal
    items: list[ConsumptionLine]


class BudgetUsageReport(BaseModel):
    """Point-in-time usage of one budget with full fund-flow traceability."""

    budget_id: uuid.UUID
    fiscal_year: str
    total_amount: Decimal
    available_amount: Decimal
    consumed_amount: Decimal
    consumed_percent: float
    org_unit: OrgUnitSummary
    allocated_total: Decimal
    transferred_in_total: Decimal
    transferred_out_total: Decimal
    deducted_total: Decimal
    allocations: list[AllocationLine]
    transfers: list[TransferLine]
    documents: list[DocumentUsage]


class TraceConsumption(BaseModel):
    budget_id: uuid.UUID
    document_type: DocumentType
    document_id: str
    item_number: int
    consumed_amount: Decimal


class TraceReport(BaseModel):
    """Everything in the tenant that carries one trace id."""

    trace_id: str
    allocations: list[AllocationLine]
    transfer: TransferLine | None
    consumptions: list[TraceConsumption]
    consumed_total: Decimal
