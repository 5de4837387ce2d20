"""Tenant-scoped repositories for ledger entities.

Each class binds ``TenantScopedRepository`` to one model and adds the
domain queries the ledger and the usage reporter need. None of them
takes a tenant id: scoping comes from the bound tenant context.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import ColumnElement, false, func, select

from procurement_ledger.errors import OrgUnitNotFoundError
from procurement_ledger.models.budget import DocumentType, OrgUnitType
from procurement_ledger.storage.orm import (
    AuditLog,
    Budget,
    BudgetAllocation,
    BudgetConsumption,
    BudgetTransfer,
    OrgUnit,
    OutboxEvent,
)
from procurement_ledger.storage.scoped import TenantScopedRepository


def period_criteria(
    column: Any,
    start_date: date | None,
    end_date: date | None,
) -> list[ColumnElement[bool]]:
    """Inclusive calendar-day range on a timestamp column (UTC days)."""
    criteria: list[ColumnElement[bool]] = []
    if start_date is not None:
        criteria.append(column >= datetime.combine(start_date, time.min, tzinfo=UTC))
    if end_date is not None:
        next_day = end_date + timedelta(days=1)
        criteria.append(column < datetime.combine(next_day, time.min, tzinfo=UTC))
    return criteria


def _transfer_id_from_trace(trace_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(trace_id)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class BalanceUpdate:
    """Budget row state returned by a guarded balance UPDATE."""

    available_amount: Decimal
    updated_at: datetime


def _balance(row: Any) -> BalanceUpdate | None:
    if row is None:
        return None
    return BalanceUpdate(available_amount=Decimal(row[1]), updated_at=row[2])


class OrgUnitRepository(TenantScopedRepository[OrgUnit]):
    """Org hierarchy nodes of the bound tenant."""

    model = OrgUnit

    async def create_unit(
        self,
        *,
        code: str,
        name: str,
        type: OrgUnitType,
        parent_id: uuid.UUID | None = None,
    ) -> OrgUnit:
        """Create a node, deriving ``level`` from its parent.

        Raises:
            OrgUnitNotFoundError: ``parent_id`` is not an active unit of
                the bound tenant.
        """
        level = 0
        if parent_id is not None:
            parent = await self.get(parent_id)
            if parent is None:
                raise OrgUnitNotFoundError(parent_id)
            level = parent.level + 1
        return await self.create(
            code=code, name=name, type=type, parent_id=parent_id, level=level
        )

    async def get_by_code(self, code: str) -> OrgUnit | None:
        return await self.find_first(OrgUnit.code == code)

    async def existing_ids(self, ids: Iterable[uuid.UUID]) -> set[uuid.UUID]:
        """Subset of ``ids`` that are active units of the bound tenant."""
        wanted = set(ids)
        if not wanted:
            return set()
        units = await self.find_many(OrgUnit.id.in_(wanted))
        return {unit.id for unit in units}

    async def list_children(self, parent_id: uuid.UUID | None) -> list[OrgUnit]:
        criterion = (
            OrgUnit.parent_id.is_(None)
            if parent_id is None
            else OrgUnit.parent_id == parent_id
        )
        return await self.find_many(criterion, order_by=(OrgUnit.code,))


class BudgetRepository(TenantScopedRepository[Budget]):
    """Budgets of the bound tenant, including the guarded balance updates.

    ``available_amount`` is changed only by ``decrement_available`` and
    ``increment_available``. Both are single UPDATE statements, so the
    new balance is computed by the database, not from a value read
    earlier in the transaction.
    """

    model = Budget

    async def find_by_key(
        self, fiscal_year: str, org_unit_id: uuid.UUID
    ) -> Budget | None:
        """Budget for (fiscal year, org unit), tombstoned ones included.

        The unique key spans soft-deleted rows too, so a deleted budget
        still blocks re-creation.
        """
        return await self.find_first(
            Budget.fiscal_year == fiscal_year,
            Budget.org_unit_id == org_unit_id,
            include_deleted=True,
        )

    async def list_active(
        self,
        *,
        fiscal_year: str | None = None,
        org_unit_id: uuid.UUID | None = None,
    ) -> list[Budget]:
        criteria: list[ColumnElement[bool]] = []
        if fiscal_year is not None:
            criteria.append(Budget.fiscal_year == fiscal_year)
        if org_unit_id is not None:
            criteria.append(Budget.org_unit_id == org_unit_id)
        return await self.find_many(
            *criteria, order_by=(Budget.fiscal_year, Budget.created_at)
        )

    async def get_for_update(self, budget_id: uuid.UUID) -> Budget | None:
        """Read one budget and hold its row lock until the transaction ends."""
        return await self.get(budget_id, for_update=True)

    async def lock_many(
        self, budget_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, Budget]:
        """Lock several budgets in ascending id order.

        Two transactions locking the same pair always acquire the locks
        in the same order, so they queue instead of deadlocking.
        """
        ids = sorted(set(budget_ids))
        if not ids:
            return {}
        stmt = (
            self._scoped_select(Budget.id.in_(ids), operation="lock_many")
            .order_by(Budget.id)
            .with_for_update(of=Budget)
        )
        result = await self._session.execute(stmt)
        return {budget.id: budget for budget in result.scalars().all()}

    async def decrement_available(
        self, budget_id: uuid.UUID, amount: Decimal
    ) -> BalanceUpdate | None:
        """Subtract ``amount`` only if the balance covers it.

        Returns:
            The new balance and update time, or None when the guard rejected the update
            (insufficient funds, or no such active budget in this tenant).
        """
        row = await self._update_returning_id(
            budget_id,
            {"available_amount": Budget.available_amount - amount},
            Budget.available_amount >= amount,
            returning=(Budget.available_amount, Budget.updated_at),
        )
        return _balance(row)

    async def increment_available(
        self,
        budget_id: uuid.UUID,
        amount: Decimal,
        *,
        transfer_origin_id: uuid.UUID | None = None,
    ) -> BalanceUpdate | None:
        """Add ``amount`` to the balance; None when the budget is gone."""
        values: dict[str, Any] = {"available_amount": Budget.available_amount + amount}
        if transfer_origin_id is not None:
            values["transfer_origin_id"] = transfer_origin_id
        row = await self._update_returning_id(
            budget_id, values, returning=(Budget.available_amount, Budget.updated_at)
        )
        return _balance(row)


class AllocationRepository(TenantScopedRepository[BudgetAllocation]):
    model = BudgetAllocation

    async def list_for_budget(
        self,
        budget_id: uuid.UUID,
        *,
        trace_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[BudgetAllocation]:
        criteria = [
            BudgetAllocation.budget_id == budget_id,
            *period_criteria(BudgetAllocation.allocated_at, start_date, end_date),
        ]
        if trace_id is not None:
            criteria.append(BudgetAllocation.trace_id == trace_id)
        return await self.find_many(
            *criteria, order_by=(BudgetAllocation.allocated_at, BudgetAllocation.id)
        )

    async def list_by_trace(self, trace_id: str) -> list[BudgetAllocation]:
        return await self.find_many(
            BudgetAllocation.trace_id == trace_id,
            order_by=(BudgetAllocation.allocated_at, BudgetAllocation.id),
        )


class TransferRepository(TenantScopedRepository[BudgetTransfer]):
    """Transfer history. A transfer's trace id is its own id."""

    model = BudgetTransfer

    def _history_criteria(
        self,
        side: Any,
        budget_id: uuid.UUID,
        trace_id: str | None,
        start_date: date | None,
        end_date: date | None,
    ) -> list[ColumnElement[bool]]:
        criteria = [
            side == budget_id,
            *period_criteria(BudgetTransfer.transferred_at, start_date, end_date),
        ]
        if trace_id is not None:
            transfer_id = _transfer_id_from_trace(trace_id)
            criteria.append(
                false() if transfer_id is None else BudgetTransfer.id == transfer_id
            )
        return criteria

    async def list_outbound(
        self,
        budget_id: uuid.UUID,
        *,
        trace_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[BudgetTransfer]:
        criteria = self._history_criteria(
            BudgetTransfer.source_budget_id, budget_id, trace_id, start_date, end_date
        )
        return await self.find_many(
            *criteria, order_by=(BudgetTransfer.transferred_at,)
        )

    async def list_inbound(
        self,
        budget_id: uuid.UUID,
        *,
        trace_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[BudgetTransfer]:
        criteria = self._history_criteria(
            BudgetTransfer.target_budget_id, budget_id, trace_id, start_date, end_date
        )
        return await self.find_many(
            *criteria, order_by=(BudgetTransfer.transferred_at,)
        )

    async def get_by_trace(self, trace_id: str) -> BudgetTransfer | None:
        transfer_id = _transfer_id_from_trace(trace_id)
        if transfer_id is None:
            return None
        return await self.get(transfer_id)


class ConsumptionRepository(TenantScopedRepository[BudgetConsumption]):
    """Consumption lines, unique per (document type, document id, item)."""

    model = BudgetConsumption

    async def lock_document(
        self, document_type: DocumentType, document_id: str
    ) -> None:
        """Serialize deductions of one document until the transaction ends.

        Row locks only cover lines that already exist, so two first
        submissions of the same line would both miss each other. A
        transaction-scoped advisory lock on the tenant's document key
        makes them queue instead.
        """
        tenant_id = self._bound_tenant("lock_document")
        key = f"{tenant_id}:{document_type}:{document_id}"
        await self._session.execute(
            select(func.pg_advisory_xact_lock(func.hashtextextended(key, 0)))
        )

    async def lock_lines(
        self,
        document_type: DocumentType,
        document_id: str,
        item_numbers: Iterable[int],
    ) -> dict[int, BudgetConsumption]:
        """Existing lines of one document, locked, keyed by item number."""
        numbers = sorted(set(item_numbers))
        if not numbers:
            return {}
        stmt = (
            self._scoped_select(
                BudgetConsumption.document_type == document_type,
                BudgetConsumption.document_id == document_id,
                BudgetConsumption.item_number.in_(numbers),
                operation="lock_lines",
            )
            .order_by(BudgetConsumption.item_number)
            .with_for_update(of=BudgetConsumption)
        )
        result = await self._session.execute(stmt)
        return {line.item_number: line for line in result.scalars().all()}

    async def upsert_line(
        self,
        *,
        budget_id: uuid.UUID,
        document_type: DocumentType,
        document_id: str,
        item_number: int,
        consumed_amount: Decimal,
        budget_allocation_id: uuid.UUID | None = None,
        transfer_trace_id: str | None = None,
    ) -> BudgetConsumption | None:
        """Insert the line, or overwrite the one already stored for it."""
        values: dict[str, Any] = {
            "budget_id": budget_id,
            "consumed_amount": consumed_amount,
            "budget_allocation_id": budget_allocation_id,
            "transfer_trace_id": transfer_trace_id,
        }
        key = {
            "document_type": document_type,
            "document_id": document_id,
            "item_number": item_number,
        }
        return await self.upsert(
            conflict_columns=tuple(key),
            create={**values, **key},
            update_values={**values, "updated_at": func.now()},
        )

    async def list_for_budget(
        self,
        budget_id: uuid.UUID,
        *,
        trace_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[BudgetConsumption]:
        criteria = [
            BudgetConsumption.budget_id == budget_id,
            *period_criteria(BudgetConsumption.updated_at, start_date, end_date),
        ]
        if trace_id is not None:
            criteria.append(BudgetConsumption.transfer_trace_id == trace_id)
        return await self.find_many(
            *criteria,
            order_by=(BudgetConsumption.document_id, BudgetConsumption.item_number),
        )

    async def list_by_trace(self, trace_id: str) -> list[BudgetConsumption]:
        return await self.find_many(
            BudgetConsumption.transfer_trace_id == trace_id,
            order_by=(BudgetConsumption.updated_at, BudgetConsumption.item_number),
        )


class AuditLogRepository(TenantScopedRepository[AuditLog]):
    model = AuditLog

    async def list_for_target(self, target_type: str, target_id: str) -> list[AuditLog]:
        return await self.find_many(
            AuditLog.target_type == target_type,
            AuditLog.target_id == target_id,
            order_by=(AuditLog.created_at,),
        )


class OutboxRepository(TenantScopedRepository[OutboxEvent]):
    model = OutboxEvent

    async def list_unpublished(self, *, limit: int = 100) -> list[OutboxEvent]:
        return await self.find_many(
            OutboxEvent.published_at.is_(None),
            order_by=(OutboxEvent.created_at,),
            limit=limit,
        )
