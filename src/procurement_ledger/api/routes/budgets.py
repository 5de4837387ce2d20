"""Budget ledger API endpoints."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from procurement_ledger.api.deps import get_ledger, get_usage_reporter
from procurement_ledger.api.errors import ledger_http_error
from procurement_ledger.api.schemas import (
    AllocateRequest,
    AllocateResponse,
    AllocationResponse,
    BudgetCreateRequest,
    BudgetListResponse,
    BudgetResponse,
    ConsumptionResponse,
    DeductRequest,
    DeductResponse,
    TransferRequest,
    TransferResponse,
)
from procurement_ledger.budget_ledger import BudgetLedger
from procurement_ledger.errors import LedgerError
from procurement_ledger.models.reports import BudgetUsageReport
from procurement_ledger.usage_report import UsageReporter

router = APIRouter(tags=["budgets"])

LedgerDep = Annotated[BudgetLedger, Depends(get_ledger)]
ReporterDep = Annotated[UsageReporter, Depends(get_usage_reporter)]


@router.post("/{tenant}/budgets", status_code=201)
async def create_budget(body: BudgetCreateRequest, ledger: LedgerDep) -> BudgetResponse:
    """Create the budget of one org unit for one fiscal year.

    The new budget starts with ``available_amount == total_amount``.
    """
    try:
        budget = await ledger.create(
            fiscal_year=body.fiscal_year,
            org_unit_id=body.org_unit_id,
            total_amount=body.total_amount,
            type=body.type,
            config_id=body.config_id,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return BudgetResponse.model_validate(budget)


@router.get("/{tenant}/budgets")
async def list_budgets(
    ledger: LedgerDep,
    fiscal_year: Annotated[str | None, Query(alias="fiscalYear", max_length=10)] = None,
    org_unit_id: Annotated[uuid.UUID | None, Query(alias="orgUnitId")] = None,
) -> BudgetListResponse:
    """List active budgets, optionally filtered by fiscal year or org unit."""
    try:
        budgets = await ledger.list_budgets(
            fiscal_year=fiscal_year, org_unit_id=org_unit_id
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return BudgetListResponse(
        items=[BudgetResponse.model_validate(b) for b in budgets],
        total=len(budgets),
    )


@router.post("/{tenant}/budgets/transfer", status_code=201)
async def transfer_budget(body: TransferRequest, ledger: LedgerDep) -> TransferResponse:
    """Move funds between two budgets of the same fiscal year.

    The returned ``trace_id`` is the transfer id; pass it as
    ``transfer_trace_id`` on deductions funded by this transfer.
    """
    try:
        result = await ledger.transfer(
            body.source_budget_id,
            body.target_budget_id,
            body.amount,
            transfer_type=body.transfer_type,
            trace_flag=body.trace_flag,
            approval_chain=body.approval_chain,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return TransferResponse(
        transfer_id=result.transfer.id,
        trace_id=result.trace_id,
        amount=result.transfer.amount,
        transfer_type=result.transfer.transfer_type,
        source=BudgetResponse.model_validate(result.source),
        target=BudgetResponse.model_validate(result.target),
    )


@router.get("/{tenant}/budgets/{budget_id}")
async def get_budget(budget_id: uuid.UUID, ledger: LedgerDep) -> BudgetResponse:
    """Get one active budget. Budgets of other tenants are reported as 404."""
    try:
        budget = await ledger.get_budget(budget_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return BudgetResponse.model_validate(budget)


@router.post("/{tenant}/budgets/{budget_id}/allocate", status_code=201)
async def allocate_budget(
    budget_id: uuid.UUID,
    body: AllocateRequest,
    ledger: LedgerDep,
) -> AllocateResponse:
    """Distribute funds of a budget to child org units in one transaction."""
    try:
        result = await ledger.allocate(
            budget_id,
            body.allocations,
            reason=body.reason,
            trace_id=body.trace_id,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return AllocateResponse(
        budget=BudgetResponse.model_validate(result.budget),
        trace_id=result.trace_id,
        allocations=[AllocationResponse.model_validate(a) for a in result.allocations],
    )


@router.post("/{tenant}/budgets/{budget_id}/deduct")
async def deduct_budget(
    budget_id: uuid.UUID,
    body: DeductRequest,
    ledger: LedgerDep,
) -> DeductResponse:
    """Book consumption of a procurement document against a budget.

    Idempotent per (document id, item number): resubmitting a line
    updates it and moves the balance only by the difference.
    """
    try:
        result = await ledger.deduct(
            budget_id,
            amount=body.amount,
            document_type=body.document_type,
            document_id=body.document_id,
            items=body.items,
            transfer_trace_id=body.transfer_trace_id,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return DeductResponse(
        budget=BudgetResponse.model_validate(result.budget),
        charged=result.charged,
        lines=[ConsumptionResponse.model_validate(line) for line in result.lines],
    )


@router.get("/{tenant}/budgets/{budget_id}/usage")
async def get_budget_usage(
    budget_id: uuid.UUID,
    reporter: ReporterDep,
    trace_id: Annotated[str | None, Query(alias="traceId", max_length=100)] = None,
    start_date: Annotated[date | None, Query(alias="startDate")] = None,
    end_date: Annotated[date | None, Query(alias="endDate")] = None,
) -> BudgetUsageReport:
    """Usage report with allocations, transfers and consumption.

    ``traceId`` narrows the history to one fund movement; ``startDate``
    and ``endDate`` (inclusive) narrow it to a period.
    """
    if start_date is not None and end_date is not None and start_date > end_date:
        raise HTTPException(
            status_code=422, detail="startDate must not be after endDate"
        )
    try:
        return await reporter.build(
            budget_id, trace_id=trace_id, start_date=start_date, end_date=end_date
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
