"""Read-only usage reports over the budget ledger.

Reports read whatever is committed when they run. They take no locks
and may run concurrently with ledger writes.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from procurement_ledger.errors import BudgetNotFoundError
from procurement_ledger.models.reports import (
    AllocationLine,
    BudgetUsageReport,
    ConsumptionLine,
    DocumentUsage,
    OrgUnitSummary,
    TraceConsumption,
    TraceReport,
    TransferLine,
)
from procurement_ledger.storage.orm import (
    Budget,
    BudgetAllocation,
    BudgetConsumption,
    BudgetTransfer,
)
from procurement_ledger.storage.repositories import (
    AllocationRepository,
    BudgetRepository,
    ConsumptionRepository,
    TransferRepository,
)
from procurement_ledger.tenancy.context import require_tenant_id

logger = structlog.get_logger()

ZERO = Decimal("0")


def consumed_percent(total: Decimal, available: Decimal) -> float:
    """Share of ``total`` no longer available, rounded to 2 decimals."""
    if total <= ZERO:
        return 0.0
    percent = (total - available) / total * 100
    return float(percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _allocation_line(allocation: BudgetAllocation) -> AllocationLine:
    return AllocationLine(
        allocation_id=allocation.id,
        to_org_unit_id=allocation.to_org_unit_id,
        to_org_unit=allocation.to_org_unit.name,
        amount=allocation.amount,
        reason=allocation.reason,
        trace_id=allocation.trace_id,
        allocated_at=allocation.allocated_at,
    )


def _transfer_line(transfer: BudgetTransfer, *, outbound: bool) -> TransferLine:
    counterparty = transfer.target_budget if outbound else transfer.source_budget
    return TransferLine(
        direction="OUT" if outbound else "IN",
        transfer_id=transfer.id,
        counterparty_budget_id=counterparty.id,
        counterparty_org_unit=counterparty.org_unit.name,
        amount=transfer.amount,
        transferred_at=transfer.transferred_at,
        trace_id=str(transfer.id),
    )


def group_by_document(lines: list[BudgetConsumption]) -> list[DocumentUsage]:
    """Group consumption lines per (document type, document id)."""
    grouped: dict[tuple[str, str], list[BudgetConsumption]] = defaultdict(list)
    for line in lines:
        grouped[(line.document_type, line.document_id)].append(line)

    documents = []
    for group in grouped.values():
        group.sort(key=lambda line: line.item_number)
        documents.append(
            DocumentUsage(
                document_type=group[0].document_type,
                document_id=group[0].document_id,
                amount=sum((line.consumed_amount for line in group), ZERO),
                items=[
                    ConsumptionLine(
                        item_number=line.item_number,
                        consumed_amount=line.consumed_amount,
                        budget_allocation_id=line.budget_allocation_id,
                        transfer_trace_id=line.transfer_trace_id,
                        updated_at=line.updated_at,
                    )
                    for line in group
                ],
            )
        )
    return documents


class UsageReporter:
    """Aggregates ledger history of the bound tenant into reports."""

    def __init__(self, session: AsyncSession) -> None:
        self._budgets = BudgetRepository(session)
        self._allocations = AllocationRepository(session)
        self._transfers = TransferRepository(session)
        self._consumptions = ConsumptionRepository(session)

    async def build(
        self,
        budget_id: uuid.UUID,
        *,
        trace_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> BudgetUsageReport:
        """Usage report for one budget.

        ``consumed_amount`` and ``consumed_percent`` always describe the
        budget as a whole. The filters narrow only the history lists and
        their totals: ``trace_id`` keeps allocations with that trace id,
        the transfer with that id and consumption lines carrying it; the
        date range applies to allocation, transfer and consumption
        timestamps (both ends inclusive).

        Raises:
            BudgetNotFoundError: Budget is not an active budget of the
                bound tenant.
        """
        require_tenant_id("usage_report")
        budget: Budget | None = await self._budgets.get(budget_id)
        if budget is None:
            raise BudgetNotFoundError(budget_id)

        filters = {"trace_id": trace_id, "start_date": start_date, "end_date": end_date}
        allocations = await self._allocations.list_for_budget(budget.id, **filters)
        outbound = await self._transfers.list_outbound(budget.id, **filters)
        inbound = await self._transfers.list_inbound(budget.id, **filters)
        consumptions = await self._consumptions.list_for_budget(budget.id, **filters)

        transfers = [_transfer_line(t, outbound=True) for t in outbound]
        transfers += [_transfer_line(t, outbound=False) for t in inbound]
        transfers.sort(key=lambda line: line.transferred_at)

        logger.debug(
            "usage_report_built",
            budget_id=str(budget.id),
            trace_id=trace_id,
            allocations=len(allocations),
            transfers=len(transfers),
            consumptions=len(consumptions),
        )
        org_unit = budget.org_unit
        return BudgetUsageReport(
            budget_id=budget.id,
            fiscal_year=budget.fiscal_year,
            total_amount=budget.total_amount,
            available_amount=budget.available_amount,
            consumed_amount=budget.total_amount - budget.available_amount,
            consumed_percent=consumed_percent(
                budget.total_amount, budget.available_amount
            ),
            org_unit=OrgUnitSummary(
                id=org_unit.id,
                code=org_unit.code,
                name=org_unit.name,
                type=org_unit.type,
            ),
            allocated_total=sum((a.amount for a in allocations), ZERO),
            transferred_in_total=sum((t.amount for t in inbound), ZERO),
            transferred_out_total=sum((t.amount for t in outbound), ZERO),
            deducted_total=sum((c.consumed_amount for c in consumptions), ZERO),
            allocations=[_allocation_line(a) for a in allocations],
            transfers=transfers,
            documents=group_by_document(consumptions),
        )

    async def trace(self, trace_id: str) -> TraceReport:
        """Everything in the bound tenant that carries ``trace_id``.

        A trace with no matching records yields an empty report rather
        than an error.
        """
        require_tenant_id("trace_report")
        allocations = await self._allocations.list_by_trace(trace_id)
        transfer = await self._transfers.get_by_trace(trace_id)
        consumptions = await self._consumptions.list_by_trace(trace_id)

        return TraceReport(
            trace_id=trace_id,
            allocations=[_allocation_line(a) for a in allocations],
            # Seen from the source budget.
            transfer=(
                None if transfer is None else _transfer_line(transfer, outbound=True)
            ),
            consumptions=[
                TraceConsumption(
                    budget_id=line.budget_id,
                    document_type=line.document_type,
                    document_id=line.document_id,
                    item_number=line.item_number,
                    consumed_amount=line.consumed_amount,
                )
                for line in consumptions
            ],
            consumed_total=sum((line.consumed_amount for line in consumptions), ZERO),
        )
