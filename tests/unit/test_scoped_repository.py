"""Tests for the tenant-scoped repository base.

Statements are captured from a mocked session and compiled with the
PostgreSQL dialect, so the tests check the SQL that would be sent.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from procurement_ledger.errors import TenantUnboundError
from procurement_ledger.models.budget import DocumentType
from procurement_ledger.storage.orm import Budget, OrgUnit, Tenant
from procurement_ledger.storage.repositories import (
    BalanceUpdate,
    BudgetRepository,
    ConsumptionRepository,
    OrgUnitRepository,
)
from procurement_ledger.storage.scoped import TenantScopedRepository
from procurement_ledger.tenancy.context import bind_tenant


class TenantRepository(TenantScopedRepository[Tenant]):
    model = Tenant


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    mock_result = MagicMock()
    mock_result.scalar_one_or_none.return_value = None
    mock_result.scalars.return_value.all.return_value = []
    mock_result.one_or_none.return_value = None
    mock_result.scalar_one.return_value = 0
    mock_result.rowcount = 0
    session.execute.return_value = mock_result
    return session


def _compiled(session: AsyncMock) -> tuple[str, dict[str, object]]:
    """SQL text and bound parameters of the last executed statement."""
    stmt = session.execute.call_args[0][0]
    compiled = stmt.compile(dialect=postgresql.dialect())
    return str(compiled), dict(compiled.params)


class TestScopedReads:
    async def test_find_many_filters_by_tenant(self) -> None:
        session = _mock_session()
        tenant_id = uuid.uuid4()
        with bind_tenant(tenant_id):
            await BudgetRepository(session).find_many(Budget.fiscal_year == "2025")

        sql, params = _compiled(session)
        assert "budgets.tenant_id = " in sql
        assert "budgets.deleted_at IS NULL" in sql
        assert tenant_id in params.values()

    async def test_get_by_id_is_tenant_filtered(self) -> None:
        """Primary-key reads go through SELECT, never the identity map."""
        session = _mock_session()
        tenant_id = uuid.uuid4()
        budget_id = uuid.uuid4()
        with bind_tenant(tenant_id):
            result = await BudgetRepository(session).get(budget_id)

        assert result is None
        session.get.assert_not_called()
        sql, params = _compiled(session)
        assert "budgets.id = " in sql
        assert tenant_id in params.values()
        assert budget_id in params.values()

    async def test_include_deleted_drops_tombstone_filter(self) -> None:
        session = _mock_session()
        with bind_tenant(uuid.uuid4()):
            await BudgetRepository(session).find_by_key("2025", uuid.uuid4())

        sql, _ = _compiled(session)
        assert "deleted_at IS NULL" not in sql
        assert "budgets.tenant_id = " in sql

    async def test_caller_or_cannot_widen_tenant_filter(self) -> None:
        """Caller criteria are grouped so OR stays inside the tenant filter."""
        session = _mock_session()
        with bind_tenant(uuid.uuid4()):
            await OrgUnitRepository(session).find_many(
                (OrgUnit.code == "A") | (OrgUnit.code == "B")
            )

        sql, _ = _compiled(session)
        assert "AND (org_units.code = " in sql

    async def test_for_update_locks_rows(self) -> None:
        session = _mock_session()
        with bind_tenant(uuid.uuid4()):
            await BudgetRepository(session).get_for_update(uuid.uuid4())

        sql, _ = _compiled(session)
        assert "FOR UPDATE OF budgets" in sql

    async def test_count_is_scoped(self) -> None:
        session = _mock_session()
        tenant_id = uuid.uuid4()
        with bind_tenant(tenant_id):
            assert await OrgUnitRepository(session).count() == 0

        sql, params = _compiled(session)
        assert "count(*)" in sql
        assert tenant_id in params.values()


class TestUnbound:
    async def test_read_raises_before_sql(self) -> None:
        session = _mock_session()
        with pytest.raises(TenantUnboundError):
            await BudgetRepository(session).find_many()
        session.execute.assert_not_awaited()

    async def test_create_raises_before_flush(self) -> None:
        session = _mock_session()
        with pytest.raises(TenantUnboundError):
            await OrgUnitRepository(session).create(code="X", name="X", type="COMPANY")
        session.add.assert_not_called()
        session.flush.assert_not_awaited()

    async def test_allow_unbound_passes_through(self) -> None:
        session = _mock_session()
        await BudgetRepository(session, allow_unbound=True).find_many()

        sql, _ = _compiled(session)
        assert "tenant_id" not in sql.split("WHERE", 1)[-1]

    async def test_non_tenant_entity_passes_through(self) -> None:
        session = _mock_session()
        await TenantRepository(session).find_many()

        sql, _ = _compiled(session)
        assert "WHERE" not in sql


class TestScopedWrites:
    async def test_create_forces_bound_tenant(self) -> None:
        """A tenant_id supplied by the caller is overwritten."""
        session = _mock_session()
        tenant_id = uuid.uuid4()
        with bind_tenant(tenant_id):
            unit = await OrgUnitRepository(session).create(
                tenant_id=uuid.uuid4(), code="HQ", name="Head office", type="COMPANY"
            )

        assert unit.tenant_id == tenant_id
        session.add.assert_called_once_with(unit)
        session.flush.assert_awaited_once()

    async def test_create_many_forces_tenant_on_each_row(self) -> None:
        session = _mock_session()
        tenant_id = uuid.uuid4()
        rows = [
            {"code": "A", "name": "A", "type": "DIVISION"},
            {"code": "B", "name": "B", "type": "DIVISION", "tenant_id": uuid.uuid4()},
        ]
        with bind_tenant(tenant_id):
            units = await OrgUnitRepository(session).create_many(rows)

        assert [u.tenant_id for u in units] == [tenant_id, tenant_id]
        session.add_all.assert_called_once()

    async def test_update_scoped_and_reports_absence(self) -> None:
        session = _mock_session()
        tenant_id = uuid.uuid4()
        with bind_tenant(tenant_id):
            updated = await BudgetRepository(session).update(
                uuid.uuid4(), {"config_id": "cfg", "tenant_id": uuid.uuid4()}
            )

        assert updated is False
        sql, params = _compiled(session)
        assert sql.startswith("UPDATE budgets SET config_id=")
        assert "tenant_id=" not in sql.split("WHERE")[0]
        assert tenant_id in params.values()

    async def test_soft_delete_rejected_for_permanent_entities(self) -> None:
        from procurement_ledger.storage.repositories import AllocationRepository

        session = _mock_session()
        with bind_tenant(uuid.uuid4()), pytest.raises(TypeError):
            await AllocationRepository(session).soft_delete(uuid.uuid4())

    async def test_upsert_matches_within_tenant(self) -> None:
        session = _mock_session()
        tenant_id = uuid.uuid4()
        with bind_tenant(tenant_id):
            await ConsumptionRepository(session).upsert_line(
                budget_id=uuid.uuid4(),
                document_type=DocumentType.PO,
                document_id="PO-1",
                item_number=1,
                consumed_amount=Decimal("10.00"),
            )

        sql, params = _compiled(session)
        assert (
            "ON CONFLICT (tenant_id, document_type, document_id, item_number) "
            "DO UPDATE"
        ) in sql
        assert "WHERE budget_consumptions.tenant_id = " in sql
        assert tenant_id in params.values()


class TestGuardedBalance:
    async def test_decrement_guard_rejects(self) -> None:
        """No row returned means the guard rejected the update."""
        session = _mock_session()
        with bind_tenant(uuid.uuid4()):
            result = await BudgetRepository(session).decrement_available(
                uuid.uuid4(), Decimal("100")
            )

        assert result is None
        sql, _ = _compiled(session)
        assert "available_amount=(budgets.available_amount - " in sql
        assert "budgets.available_amount >= " in sql
        assert (
            "RETURNING budgets.id, budgets.available_amount, budgets.updated_at"
            in sql
        )
        assert "updated_at=now()" in sql

    async def test_decrement_returns_new_balance(self) -> None:
        session = _mock_session()
        budget_id = uuid.uuid4()
        updated_at = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
        session.execute.return_value.one_or_none.return_value = (
            budget_id,
            Decimal("40.00"),
            updated_at,
        )
        with bind_tenant(uuid.uuid4()):
            result = await BudgetRepository(session).decrement_available(
                budget_id, Decimal("10")
            )

        assert result == BalanceUpdate(
            available_amount=Decimal("40.00"), updated_at=updated_at
        )

    async def test_increment_records_transfer_origin(self) -> None:
        session = _mock_session()
        transfer_id = uuid.uuid4()
        with bind_tenant(uuid.uuid4()):
            await BudgetRepository(session).increment_available(
                uuid.uuid4(), Decimal("5"), transfer_origin_id=transfer_id
            )

        sql, params = _compiled(session)
        assert "transfer_origin_id=" in sql
        assert transfer_id in params.values()
