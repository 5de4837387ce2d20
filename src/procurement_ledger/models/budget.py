"""Budget domain enums and ledger operation inputs."""

from __future__ import annotations

import uuid
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field

Money = Decimal


class OrgUnitType(StrEnum):
    COMPANY = "COMPANY"
    DIVISION = "DIVISION"
    DEPARTMENT = "DEPARTMENT"
    PURCHASING_GROUP = "PURCHASING_GROUP"


class BudgetType(StrEnum):
    """Hierarchy level a budget is planned at."""

    DIVISION = "DIVISION"
    DEPARTMENT = "DEPARTMENT"
    STAFF = "STAFF"
    PROJECT = "PROJECT"


class TransferType(StrEnum):
    SAME_LEVEL = "SAME_LEVEL"
    CROSS_LEVEL = "CROSS_LEVEL"


class DocumentType(StrEnum):
    """Procurement document a deduction is booked against."""

    PO = "PO"
    INVOICE = "INVOICE"
    PR = "PR"


class AllocationTarget(BaseModel):
    """One child org unit receiving part of an allocation."""

    org_unit_id: uuid.UUID
    amount: Money = Field(gt=0, max_digits=18, decimal_places=2)


class DeductionItem(BaseModel):
    """One document line consuming budget.

    ``transfer_trace_id`` overrides the deduction-level trace id for
    this line only.
    """

    item_number: int = Field(ge=0)
    consumed_amount: Money = Field(ge=0, max_digits=18, decimal_places=2)
    budget_allocation_id: uuid.UUID | None = None
    transfer_trace_id: str | None = Field(default=None, max_length=100)


HEADER_ITEM_NUMBER = 0
"""Line number used when a deduction carries no explicit items."""
