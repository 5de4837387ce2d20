"""Tests for usage and trace reports."""

import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from procurement_ledger.errors import BudgetNotFoundError, TenantUnboundError
from procurement_ledger.models.budget import BudgetType, DocumentType, OrgUnitType
from procurement_ledger.storage.orm import (
    Budget,
    BudgetAllocation,
    BudgetConsumption,
    BudgetTransfer,
    OrgUnit,
)
from procurement_ledger.tenancy.context import bind_tenant
from procurement_ledger.usage_report import (
    UsageReporter,
    consumed_percent,
    group_by_document,
)

TENANT_ID = uuid.uuid4()
NOW = datetime(2025, 3, 15, 10, 0, tzinfo=UTC)


def _org_unit(code: str) -> OrgUnit:
    return OrgUnit(
        id=uuid.uuid4(), code=code, name=f"Unit {code}", type=OrgUnitType.DEPARTMENT
    )


def _budget(code: str, total: str, available: str) -> Budget:
    org_unit = _org_unit(code)
    return Budget(
        id=uuid.uuid4(),
        fiscal_year="2025",
        org_unit_id=org_unit.id,
        org_unit=org_unit,
        type=BudgetType.DEPARTMENT,
        total_amount=Decimal(total),
        available_amount=Decimal(available),
    )


def _consumption(
    budget_id: uuid.UUID, document_id: str, item_number: int, amount: str
) -> BudgetConsumption:
    return BudgetConsumption(
        id=uuid.uuid4(),
        budget_id=budget_id,
        document_type=DocumentType.PO,
        document_id=document_id,
        item_number=item_number,
        consumed_amount=Decimal(amount),
        transfer_trace_id=None,
        updated_at=NOW,
    )


@pytest.fixture()
def reporter() -> UsageReporter:
    reporter = UsageReporter(AsyncMock())
    reporter._budgets = AsyncMock()
    reporter._allocations = AsyncMock()
    reporter._transfers = AsyncMock()
    reporter._consumptions = AsyncMock()
    return reporter


class TestConsumedPercent:
    def test_rounds_half_up(self) -> None:
        assert consumed_percent(Decimal("3"), Decimal("2")) == 33.33
        assert consumed_percent(Decimal("8"), Decimal("7.9996")) == 0.01

    def test_untouched_and_exhausted(self) -> None:
        assert consumed_percent(Decimal("100"), Decimal("100")) == 0.0
        assert consumed_percent(Decimal("100"), Decimal("0")) == 100.0

    def test_zero_total(self) -> None:
        assert consumed_percent(Decimal("0"), Decimal("0")) == 0.0


class TestGroupByDocument:
    def test_groups_and_sorts_items(self) -> None:
        budget_id = uuid.uuid4()
        lines = [
            _consumption(budget_id, "PO-1", 2, "5.00"),
            _consumption(budget_id, "PO-2", 1, "7.00"),
            _consumption(budget_id, "PO-1", 1, "3.00"),
        ]

        documents = group_by_document(lines)

        assert [d.document_id for d in documents] == ["PO-1", "PO-2"]
        assert documents[0].amount == Decimal("8.00")
        assert [item.item_number for item in documents[0].items] == [1, 2]


class TestBuild:
    async def test_report_totals(self, reporter: UsageReporter) -> None:
        budget = _budget("D1", "50000000", "32000000")
        child = _org_unit("C1")
        peer = _budget("D2", "10000000", "10000000")
        allocation = BudgetAllocation(
            id=uuid.uuid4(),
            budget_id=budget.id,
            to_org_unit_id=child.id,
            to_org_unit=child,
            amount=Decimal("8000000"),
            trace_id="alloc-1",
            allocated_at=NOW,
        )
        outbound = BudgetTransfer(
            id=uuid.uuid4(),
            source_budget=budget,
            target_budget=peer,
            amount=Decimal("10000000"),
            transferred_at=NOW + timedelta(hours=1),
        )
        reporter._budgets.get.return_value = budget
        reporter._allocations.list_for_budget.return_value = [allocation]
        reporter._transfers.list_outbound.return_value = [outbound]
        reporter._transfers.list_inbound.return_value = []
        reporter._consumptions.list_for_budget.return_value = []

        with bind_tenant(TENANT_ID):
            report = await reporter.build(budget.id)

        assert report.consumed_amount == Decimal("18000000")
        assert report.consumed_percent == 36.0
        assert report.allocated_total == Decimal("8000000")
        assert report.transferred_out_total == Decimal("10000000")
        assert report.transferred_in_total == 0
        assert report.org_unit.code == "D1"
        assert report.allocations[0].to_org_unit == "Unit C1"
        transfer = report.transfers[0]
        assert transfer.direction == "OUT"
        assert transfer.counterparty_budget_id == peer.id
        assert transfer.trace_id == str(outbound.id)

    async def test_filters_forwarded(self, reporter: UsageReporter) -> None:
        budget = _budget("D1", "100", "100")
        reporter._budgets.get.return_value = budget
        for repo in (reporter._allocations, reporter._consumptions):
            repo.list_for_budget.return_value = []
        reporter._transfers.list_outbound.return_value = []
        reporter._transfers.list_inbound.return_value = []

        start, end = date(2025, 1, 1), date(2025, 3, 31)
        with bind_tenant(TENANT_ID):
            await reporter.build(
                budget.id, trace_id="t-1", start_date=start, end_date=end
            )

        expected = {"trace_id": "t-1", "start_date": start, "end_date": end}
        reporter._allocations.list_for_budget.assert_awaited_once_with(
            budget.id, **expected
        )
        reporter._consumptions.list_for_budget.assert_awaited_once_with(
            budget.id, **expected
        )

    async def test_missing_budget(self, reporter: UsageReporter) -> None:
        reporter._budgets.get.return_value = None
        with bind_tenant(TENANT_ID), pytest.raises(BudgetNotFoundError):
            await reporter.build(uuid.uuid4())

    async def test_requires_bound_tenant(self, reporter: UsageReporter) -> None:
        with pytest.raises(TenantUnboundError):
            await reporter.build(uuid.uuid4())
        reporter._budgets.get.assert_not_awaited()


class TestTrace:
    async def test_transfer_trace(self, reporter: UsageReporter) -> None:
        source, target = _budget("D1", "50", "40"), _budget("D2", "50", "55")
        transfer = BudgetTransfer(
            id=uuid.uuid4(),
            source_budget=source,
            target_budget=target,
            amount=Decimal("10"),
            transferred_at=NOW,
        )
        line = _consumption(target.id, "PO-1", 1, "4.00")
        reporter._allocations.list_by_trace.return_value = []
        reporter._transfers.get_by_trace.return_value = transfer
        reporter._consumptions.list_by_trace.return_value = [line]

        with bind_tenant(TENANT_ID):
            report = await reporter.trace(str(transfer.id))

        assert report.transfer is not None
        assert report.transfer.direction == "OUT"
        assert report.transfer.counterparty_org_unit == "Unit D2"
        assert report.consumed_total == Decimal("4.00")
        assert report.consumptions[0].budget_id == target.id

    async def test_unknown_trace_is_empty(self, reporter: UsageReporter) -> None:
        reporter._allocations.list_by_trace.return_value = []
        reporter._transfers.get_by_trace.return_value = None
        reporter._consumptions.list_by_trace.return_value = []

        with bind_tenant(TENANT_ID):
            report = await reporter.trace("nothing-here")

        assert report.transfer is None
        assert report.allocations == []
        assert report.consumed_total == 0
