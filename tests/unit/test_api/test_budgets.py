"""Tests for the budget ledger endpoints."""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from procurement_ledger.api.app import app
from procurement_ledger.api.deps import get_ledger, get_usage_reporter
from procurement_ledger.budget_ledger import (
    AllocationResult,
    DeductionResult,
    TransferResult,
)
from procurement_ledger.errors import (
    BudgetNotFoundError,
    DuplicateBudgetError,
    FiscalYearMismatchError,
    InsufficientFundsError,
    OrgUnitNotFoundError,
)
from procurement_ledger.models.budget import (
    AllocationTarget,
    BudgetType,
    DocumentType,
    TransferType,
)
from procurement_ledger.models.reports import TraceReport
from procurement_ledger.storage.orm import (
    Budget,
    BudgetAllocation,
    BudgetConsumption,
    BudgetTransfer,
)

NOW = datetime(2025, 3, 15, 10, 0, tzinfo=UTC)
BASE = "/api/v1/acme"


def _budget(available: str = "50000000.00", total: str = "50000000.00") -> Budget:
    return Budget(
        id=uuid.uuid4(),
        fiscal_year="2025",
        org_unit_id=uuid.uuid4(),
        type=BudgetType.DIVISION,
        total_amount=Decimal(total),
        available_amount=Decimal(available),
        config_id=None,
        transfer_origin_id=None,
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.fixture()
def mock_ledger() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
def mock_reporter() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
async def client(
    mock_ledger: AsyncMock, mock_reporter: AsyncMock
) -> AsyncGenerator[AsyncClient]:
    app.dependency_overrides[get_ledger] = lambda: mock_ledger
    app.dependency_overrides[get_usage_reporter] = lambda: mock_reporter
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


class TestCreateBudget:
    async def test_create_returns_201(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        budget = _budget()
        mock_ledger.create.return_value = budget

        response = await client.post(
            f"{BASE}/budgets",
            json={
                "fiscal_year": "2025",
                "org_unit_id": str(budget.org_unit_id),
                "total_amount": "50000000.00",
                "type": "DIVISION",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == str(budget.id)
        assert data["available_amount"] == data["total_amount"] == "50000000.00"
        kwargs = mock_ledger.create.call_args.kwargs
        assert kwargs["total_amount"] == Decimal("50000000.00")
        assert kwargs["type"] == BudgetType.DIVISION

    async def test_duplicate_returns_409(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        org_unit_id = uuid.uuid4()
        mock_ledger.create.side_effect = DuplicateBudgetError("2025", org_unit_id)

        response = await client.post(
            f"{BASE}/budgets",
            json={
                "fiscal_year": "2025",
                "org_unit_id": str(org_unit_id),
                "total_amount": "100.00",
                "type": "DIVISION",
            },
        )

        assert response.status_code == 409

    async def test_unknown_org_unit_returns_404(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        org_unit_id = uuid.uuid4()
        mock_ledger.create.side_effect = OrgUnitNotFoundError(org_unit_id)

        response = await client.post(
            f"{BASE}/budgets",
            json={
                "fiscal_year": "2025",
                "org_unit_id": str(org_unit_id),
                "total_amount": "100.00",
                "type": "DEPARTMENT",
            },
        )

        assert response.status_code == 404

    async def test_non_positive_total_rejected(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        response = await client.post(
            f"{BASE}/budgets",
            json={
                "fiscal_year": "2025",
                "org_unit_id": str(uuid.uuid4()),
                "total_amount": "0",
                "type": "DIVISION",
            },
        )

        assert response.status_code == 422
        mock_ledger.create.assert_not_awaited()


class TestReadBudgets:
    async def test_list_with_filters(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        mock_ledger.list_budgets.return_value = [_budget(), _budget()]
        org_unit_id = uuid.uuid4()

        response = await client.get(
            f"{BASE}/budgets",
            params={"fiscalYear": "2025", "orgUnitId": str(org_unit_id)},
        )

        assert response.status_code == 200
        assert response.json()["total"] == 2
        mock_ledger.list_budgets.assert_awaited_once_with(
            fiscal_year="2025", org_unit_id=org_unit_id
        )

    async def test_get_missing_returns_404(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        budget_id = uuid.uuid4()
        mock_ledger.get_budget.side_effect = BudgetNotFoundError(budget_id)

        response = await client.get(f"{BASE}/budgets/{budget_id}")

        assert response.status_code == 404
        assert str(budget_id) in response.json()["detail"]


class TestTransfer:
    async def test_transfer_returns_both_balances(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        source = _budget("40000000.00")
        target = _budget("60000000.00")
        transfer = BudgetTransfer(
            id=uuid.uuid4(),
            amount=Decimal("10000000.00"),
            transfer_type=TransferType.SAME_LEVEL,
        )
        mock_ledger.transfer.return_value = TransferResult(
            transfer=transfer, source=source, target=target
        )

        response = await client.post(
            f"{BASE}/budgets/transfer",
            json={
                "source_budget_id": str(source.id),
                "target_budget_id": str(target.id),
                "amount": "10000000.00",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["trace_id"] == str(transfer.id)
        assert data["source"]["available_amount"] == "40000000.00"
        assert data["target"]["available_amount"] == "60000000.00"
        assert mock_ledger.transfer.call_args.kwargs["transfer_type"] is None

    async def test_insufficient_funds_returns_422(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        mock_ledger.transfer.side_effect = InsufficientFundsError(
            requested=Decimal("20000000"), available=Decimal("10000000")
        )

        response = await client.post(
            f"{BASE}/budgets/transfer",
            json={
                "source_budget_id": str(uuid.uuid4()),
                "target_budget_id": str(uuid.uuid4()),
                "amount": "20000000",
            },
        )

        assert response.status_code == 422
        assert "Insufficient budget" in response.json()["detail"]

    async def test_fiscal_year_mismatch_returns_422(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        mock_ledger.transfer.side_effect = FiscalYearMismatchError("2025", "2026")

        response = await client.post(
            f"{BASE}/budgets/transfer",
            json={
                "source_budget_id": str(uuid.uuid4()),
                "target_budget_id": str(uuid.uuid4()),
                "amount": "1.00",
            },
        )

        assert response.status_code == 422


class TestAllocate:
    async def test_allocate_returns_trace(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        source = _budget("32000000.00")
        child = uuid.uuid4()
        allocation = BudgetAllocation(
            id=uuid.uuid4(),
            budget_id=source.id,
            from_org_unit_id=source.org_unit_id,
            to_org_unit_id=child,
            amount=Decimal("8000000.00"),
            reason=None,
            trace_id="PLAN-Q1",
            allocated_at=NOW,
        )
        mock_ledger.allocate.return_value = AllocationResult(
            budget=source, allocations=[allocation], trace_id="PLAN-Q1"
        )

        response = await client.post(
            f"{BASE}/budgets/{source.id}/allocate",
            json={
                "allocations": [{"org_unit_id": str(child), "amount": "8000000.00"}],
                "traceId": "PLAN-Q1",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["trace_id"] == "PLAN-Q1"
        assert data["budget"]["available_amount"] == "32000000.00"
        args = mock_ledger.allocate.call_args
        assert args[0][1] == [
            AllocationTarget(org_unit_id=child, amount=Decimal("8000000.00"))
        ]
        assert args.kwargs["trace_id"] == "PLAN-Q1"

    async def test_empty_allocations_rejected(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        response = await client.post(
            f"{BASE}/budgets/{uuid.uuid4()}/allocate", json={"allocations": []}
        )

        assert response.status_code == 422
        mock_ledger.allocate.assert_not_awaited()


class TestDeduct:
    async def test_deduct_returns_lines(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        budget = _budget("90.00", "100.00")
        line = BudgetConsumption(
            id=uuid.uuid4(),
            budget_id=budget.id,
            document_type=DocumentType.PO,
            document_id="PO-1",
            item_number=0,
            consumed_amount=Decimal("10.00"),
            budget_allocation_id=None,
            transfer_trace_id="trace-1",
        )
        mock_ledger.deduct.return_value = DeductionResult(
            budget=budget, lines=[line], charged=Decimal("10.00")
        )

        response = await client.post(
            f"{BASE}/budgets/{budget.id}/deduct",
            json={
                "amount": "10.00",
                "document_type": "PO",
                "document_id": "PO-1",
                "transfer_trace_id": "trace-1",
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["charged"] == "10.00"
        assert data["lines"][0]["transfer_trace_id"] == "trace-1"
        kwargs = mock_ledger.deduct.call_args.kwargs
        assert kwargs["document_type"] == DocumentType.PO
        assert kwargs["items"] == []

    async def test_unknown_document_type_rejected(
        self, client: AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        response = await client.post(
            f"{BASE}/budgets/{uuid.uuid4()}/deduct",
            json={"amount": "1.00", "document_type": "RECEIPT", "document_id": "R"},
        )

        assert response.status_code == 422
        mock_ledger.deduct.assert_not_awaited()


class TestUsage:
    async def test_reversed_period_rejected(
        self, client: AsyncClient, mock_reporter: AsyncMock
    ) -> None:
        response = await client.get(
            f"{BASE}/budgets/{uuid.uuid4()}/usage",
            params={"startDate": "2025-04-01", "endDate": "2025-03-01"},
        )

        assert response.status_code == 422
        mock_reporter.build.assert_not_awaited()

    async def test_missing_budget_returns_404(
        self, client: AsyncClient, mock_reporter: AsyncMock
    ) -> None:
        budget_id = uuid.uuid4()
        mock_reporter.build.side_effect = BudgetNotFoundError(budget_id)

        response = await client.get(
            f"{BASE}/budgets/{budget_id}/usage", params={"traceId": "t-1"}
        )

        assert response.status_code == 404
        assert mock_reporter.build.call_args.kwargs["trace_id"] == "t-1"

    async def test_trace_report(
        self, client: AsyncClient, mock_reporter: AsyncMock
    ) -> None:
        mock_reporter.trace.return_value = TraceReport(
            trace_id="t-1",
            allocations=[],
            transfer=None,
            consumptions=[],
            consumed_total=Decimal("0"),
        )

        response = await client.get(f"{BASE}/traces/t-1")

        assert response.status_code == 200
        assert response.json()["trace_id"] == "t-1"
        mock_reporter.trace.assert_awaited_once_with("t-1")
