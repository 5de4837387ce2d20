"""Budget ledger: create, allocate, transfer and deduct.

Every mutating operation runs in one transaction on the ledger's
session: it commits when the operation returns and rolls back on any
exception, so a failed call leaves no partial write behind.

Balance changes follow one pattern. The affected budget rows are locked
with ``SELECT ... FOR UPDATE`` (several rows in ascending id order),
the request is checked against the locked balance, and the balance is
then moved by a guarded UPDATE (``available_amount >= amount``). A
guard that matches no row is reported as insufficient funds. The
database check constraint ``available_amount >= 0`` backs both.
Deductions first take an advisory lock on the (tenant, document type,
document id) key, since the consumption lines they read may not exist
yet and cannot be row-locked.

Tenant scoping is not handled here: all reads and writes go through
tenant-scoped repositories, which read the bound tenant themselves.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog
import uuid_utils
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from procurement_ledger.errors import (
    BudgetNotFoundError,
    DuplicateBudgetError,
    FiscalYearMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    OrgUnitNotFoundError,
)
from procurement_ledger.models.budget import (
    HEADER_ITEM_NUMBER,
    AllocationTarget,
    BudgetType,
    DeductionItem,
    DocumentType,
    TransferType,
)
from procurement_ledger.sinks import AuditSink, EventSink, OutboxEventSink
from procurement_ledger.storage.orm import (
    Budget,
    BudgetAllocation,
    BudgetConsumption,
    BudgetTransfer,
)
from procurement_ledger.storage.repositories import (
    AllocationRepository,
    BalanceUpdate,
    BudgetRepository,
    ConsumptionRepository,
    OrgUnitRepository,
    TransferRepository,
)
from procurement_ledger.tenancy.context import require_tenant_id

logger = structlog.get_logger()

ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class AllocationResult:
    """Outcome of one ``allocate`` call.

    Attributes:
        budget: Source budget with its post-allocation balance.
        allocations: One row per target, in request order.
        trace_id: Trace id shared by all rows of the call.
    """

    budget: Budget
    allocations: list[BudgetAllocation]
    trace_id: str


@dataclass(frozen=True, slots=True)
class TransferResult:
    """Outcome of one ``transfer`` call; ``trace_id`` is the transfer id."""

    transfer: BudgetTransfer
    source: Budget
    target: Budget

    @property
    def trace_id(self) -> str:
        return str(self.transfer.id)


@dataclass(frozen=True, slots=True)
class DeductionResult:
    """Outcome of one ``deduct`` call.

    Attributes:
        budget: Deducted budget with its post-deduction balance.
        lines: Stored consumption lines, one per submitted item.
        charged: Net balance change applied to ``budget`` by this call.
            Zero for an identical resubmission, negative when a
            resubmission lowers previously recorded amounts.
    """

    budget: Budget
    lines: list[BudgetConsumption] = field(default_factory=list)
    charged: Decimal = ZERO


def new_trace_id() -> str:
    """Time-ordered trace id for fund movements."""
    return str(uuid_utils.uuid7())


def _budget_figures(budget: Budget) -> dict[str, Any]:
    return {
        "budget_id": budget.id,
        "fiscal_year": budget.fiscal_year,
        "org_unit_id": budget.org_unit_id,
        "total_amount": budget.total_amount,
        "available_amount": budget.available_amount,
    }


class BudgetLedger:
    """Domain engine for budget fund movements within the bound tenant.

    Args:
        session: Request session. The ledger owns its transaction
            boundaries; callers must not commit it themselves.
        audit_sink: Receives one record per committed mutation.
        event_sink: Receives one event per mutation inside the
            transaction. Defaults to the transactional outbox.
        user_id: Acting user recorded in the audit trail.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        audit_sink: AuditSink,
        event_sink: EventSink | None = None,
        user_id: str | None = None,
    ) -> None:
        self._session = session
        self._audit_sink = audit_sink
        self._events = (
            event_sink if event_sink is not None else OutboxEventSink(session)
        )
        self._user_id = user_id
        self._org_units = OrgUnitRepository(session)
        self._budgets = BudgetRepository(session)
        self._allocations = AllocationRepository(session)
        self._transfers = TransferRepository(session)
        self._consumptions = ConsumptionRepository(session)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        """Commit on success, roll back every partial write on failure."""
        try:
            yield
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

    async def _audit(
        self,
        action: str,
        target_type: str,
        target_id: uuid.UUID,
        *,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        key_figures: dict[str, Any] | None = None,
    ) -> None:
        """Best-effort audit after commit; failures are only logged."""
        try:
            await self._audit_sink.record(
                action=action,
                target_type=target_type,
                target_id=str(target_id),
                user_id=self._user_id,
                old_values=old_values,
                new_values=new_values,
                key_figures=key_figures,
            )
        except Exception:
            logger.exception(
                "audit_sink_failed", action=action, target_id=str(target_id)
            )

    @staticmethod
    def _set_balance(budget: Budget, change: BalanceUpdate) -> Decimal:
        # Guarded UPDATEs bypass the identity map; mirror the returned row.
        set_committed_value(budget, "available_amount", change.available_amount)
        set_committed_value(budget, "updated_at", change.updated_at)
        return change.available_amount

    @staticmethod
    def _reject_insufficient(
        budget: Budget, requested: Decimal, available: Decimal
    ) -> InsufficientFundsError:
        logger.warning(
            "insufficient_funds",
            budget_id=str(budget.id),
            requested=str(requested),
            available=str(available),
        )
        return InsufficientFundsError(requested=requested, available=available)

    # ── Queries ──

    async def list_budgets(
        self,
        *,
        fiscal_year: str | None = None,
        org_unit_id: uuid.UUID | None = None,
    ) -> list[Budget]:
        require_tenant_id("list_budgets")
        return await self._budgets.list_active(
            fiscal_year=fiscal_year, org_unit_id=org_unit_id
        )

    async def get_budget(self, budget_id: uuid.UUID) -> Budget:
        """Active budget by id.

        Raises:
            BudgetNotFoundError: Absent, soft-deleted or another tenant's.
        """
        require_tenant_id("get_budget")
        budget = await self._budgets.get(budget_id)
        if budget is None:
            raise BudgetNotFoundError(budget_id)
        return budget

    # ── Mutations ──

    async def create(
        self,
        *,
        fiscal_year: str,
        org_unit_id: uuid.UUID,
        total_amount: Decimal,
        type: BudgetType,
        config_id: str | None = None,
    ) -> Budget:
        """Create the budget of one org unit for one fiscal year.

        ``available_amount`` starts equal to ``total_amount``.

        Raises:
            InvalidAmountError: ``total_amount`` is not positive.
            OrgUnitNotFoundError: Org unit is not in the bound tenant.
            DuplicateBudgetError: A budget already exists for the pair.
        """
        require_tenant_id("create_budget")
        if total_amount <= ZERO:
            raise InvalidAmountError("Budget total must be positive")

        async with self._transaction():
            org_unit = await self._org_units.get(org_unit_id)
            if org_unit is None:
                raise OrgUnitNotFoundError(org_unit_id)
            if await self._budgets.find_by_key(fiscal_year, org_unit_id) is not None:
                raise DuplicateBudgetError(fiscal_year, org_unit_id)
            try:
                budget = await self._budgets.create(
                    fiscal_year=fiscal_year,
                    org_unit_id=org_unit_id,
                    org_unit=org_unit,
                    type=type,
                    total_amount=total_amount,
                    available_amount=total_amount,
                    config_id=config_id,
                )
            except IntegrityError as exc:
                # Lost a race with a concurrent create for the same key.
                raise DuplicateBudgetError(fiscal_year, org_unit_id) from exc
            figures = _budget_figures(budget)
            await self._events.emit("budget.created", {**figures, "type": type})

        logger.info(
            "budget_created",
            budget_id=str(budget.id),
            fiscal_year=fiscal_year,
            total_amount=str(total_amount),
        )
        await self._audit(
            "CREATE",
            "Budget",
            budget.id,
            new_values={**figures, "type": type},
            key_figures={"amount": total_amount, "org_unit_id": org_unit_id},
        )
        return budget

    async def allocate(
        self,
        source_budget_id: uuid.UUID,
        targets: Sequence[AllocationTarget],
        *,
        reason: str | None = None,
        trace_id: str | None = None,
    ) -> AllocationResult:
        """Distribute funds of one budget to child org units.

        All allocation rows and the source decrement commit together or
        not at all. Without ``trace_id`` one is generated and shared by
        every row of the call.

        Raises:
            InvalidAmountError: No targets, or a non-positive amount.
            BudgetNotFoundError: Source budget is not in the bound tenant.
            InsufficientFundsError: Sum of amounts exceeds the balance.
            OrgUnitNotFoundError: A target org unit is not in the tenant.
        """
        require_tenant_id("allocate_budget")
        if not targets:
            raise InvalidAmountError("At least one allocation target is required")
        if any(target.amount <= ZERO for target in targets):
            raise InvalidAmountError("Allocation amounts must be positive")
        total_requested = sum((target.amount for target in targets), ZERO)
        trace_id = trace_id or new_trace_id()

        async with self._transaction():
            source = await self._budgets.get_for_update(source_budget_id)
            if source is None:
                raise BudgetNotFoundError(source_budget_id)
            before = source.available_amount
            if total_requested > before:
                raise self._reject_insufficient(source, total_requested, before)

            found = await self._org_units.existing_ids(t.org_unit_id for t in targets)
            for target in targets:
                if target.org_unit_id not in found:
                    raise OrgUnitNotFoundError(target.org_unit_id)

            allocations = await self._allocations.create_many(
                [
                    {
                        "budget_id": source.id,
                        "from_org_unit_id": source.org_unit_id,
                        "to_org_unit_id": target.org_unit_id,
                        "amount": target.amount,
                        "reason": reason,
                        "trace_id": trace_id,
                    }
                    for target in targets
                ]
            )
            change = await self._budgets.decrement_available(
                source.id, total_requested
            )
            if change is None:
                raise self._reject_insufficient(source, total_requested, before)
            remaining = self._set_balance(source, change)

            figures = {
                "budget_id": source.id,
                "trace_id": trace_id,
                "total_amount": total_requested,
                "available_before": before,
                "available_after": remaining,
                "allocations": [
                    {"org_unit_id": t.org_unit_id, "amount": t.amount} for t in targets
                ],
            }
            await self._events.emit("budget.allocated", figures)

        logger.info(
            "budget_allocated",
            budget_id=str(source.id),
            trace_id=trace_id,
            targets=len(allocations),
            total_amount=str(total_requested),
        )
        await self._audit(
            "ALLOCATE",
            "Budget",
            source.id,
            old_values={"available_amount": before},
            new_values={"available_amount": remaining},
            key_figures={**figures, "reason": reason},
        )
        return AllocationResult(
            budget=source, allocations=allocations, trace_id=trace_id
        )

    async def transfer(
        self,
        source_budget_id: uuid.UUID,
        target_budget_id: uuid.UUID,
        amount: Decimal,
        *,
        transfer_type: TransferType | None = None,
        trace_flag: bool = True,
        approval_chain: Sequence[str] | None = None,
    ) -> TransferResult:
        """Move ``amount`` from one budget to another of the same fiscal year.

        The source decrement and target increment are applied in one
        transaction, so the sum of both balances is unchanged. When
        ``transfer_type`` is omitted it is derived from the org unit
        levels of the two budgets.

        Raises:
            InvalidAmountError: Non-positive amount, or source == target.
            BudgetNotFoundError: Either budget is not in the bound tenant.
            FiscalYearMismatchError: Budgets belong to different years.
            InsufficientFundsError: ``amount`` exceeds the source balance.
        """
        require_tenant_id("transfer_budget")
        if amount <= ZERO:
            raise InvalidAmountError("Transfer amount must be positive")
        if source_budget_id == target_budget_id:
            raise InvalidAmountError("Cannot transfer a budget to itself")

        async with self._transaction():
            locked = await self._budgets.lock_many([source_budget_id, target_budget_id])
            source = locked.get(source_budget_id)
            if source is None:
                raise BudgetNotFoundError(source_budget_id)
            target = locked.get(target_budget_id)
            if target is None:
                raise BudgetNotFoundError(target_budget_id)
            if source.fiscal_year != target.fiscal_year:
                logger.warning(
                    "fiscal_year_mismatch",
                    source_budget_id=str(source.id),
                    target_budget_id=str(target.id),
                )
                raise FiscalYearMismatchError(source.fiscal_year, target.fiscal_year)
            source_before = source.available_amount
            target_before = target.available_amount
            if amount > source_before:
                raise self._reject_insufficient(source, amount, source_before)

            if transfer_type is None:
                same_level = source.org_unit.level == target.org_unit.level
                transfer_type = (
                    TransferType.SAME_LEVEL if same_level else TransferType.CROSS_LEVEL
                )
            transfer = await self._transfers.create(
                source_budget_id=source.id,
                target_budget_id=target.id,
                amount=amount,
                transfer_type=transfer_type,
                trace_flag=trace_flag,
                approval_chain=list(approval_chain) if approval_chain else None,
            )

            debit = await self._budgets.decrement_available(source.id, amount)
            if debit is None:
                raise self._reject_insufficient(source, amount, source_before)
            credit = await self._budgets.increment_available(
                target.id, amount, transfer_origin_id=transfer.id
            )
            if credit is None:
                raise BudgetNotFoundError(target.id)
            source_after = self._set_balance(source, debit)
            target_after = self._set_balance(target, credit)
            set_committed_value(target, "transfer_origin_id", transfer.id)

            figures = {
                "transfer_id": transfer.id,
                "trace_id": str(transfer.id),
                "source_budget_id": source.id,
                "target_budget_id": target.id,
                "amount": amount,
                "transfer_type": transfer_type,
                "source_available_after": source_after,
                "target_available_after": target_after,
            }
            await self._events.emit("budget.transferred", figures)

        logger.info(
            "budget_transferred",
            transfer_id=str(transfer.id),
            source_budget_id=str(source.id),
            target_budget_id=str(target.id),
            amount=str(amount),
        )
        await self._audit(
            "TRANSFER",
            "BudgetTransfer",
            transfer.id,
            old_values={
                "source_available": source_before,
                "target_available": target_before,
            },
            new_values={
                "source_available": source_after,
                "target_available": target_after,
            },
            key_figures={**figures, "trace_flag": trace_flag},
        )
        return TransferResult(transfer=transfer, source=source, target=target)

    async def deduct(
        self,
        budget_id: uuid.UUID,
        *,
        amount: Decimal,
        document_type: DocumentType,
        document_id: str,
        items: Sequence[DeductionItem] = (),
        transfer_trace_id: str | None = None,
    ) -> DeductionResult:
        """Book consumption of a PO / invoice / PR against a budget.

        Lines are keyed by (document id, item number). Resubmitting a
        line overwrites it, and the balance moves only by the difference
        to what was recorded before. A line previously booked against a
        different budget is released back to that budget first. Without
        ``items`` the whole amount is recorded as the header line.

        Raises:
            InvalidAmountError: Non-positive amount, duplicate item
                numbers, or item amounts not summing to ``amount``.
            BudgetNotFoundError: Budget is not in the bound tenant.
            InsufficientFundsError: Net increase exceeds the balance.
        """
        require_tenant_id("deduct_budget")
        if amount <= ZERO:
            raise InvalidAmountError("Deduction amount must be positive")
        lines_in = list(items) or [
            DeductionItem(item_number=HEADER_ITEM_NUMBER, consumed_amount=amount)
        ]
        numbers = [line.item_number for line in lines_in]
        if len(set(numbers)) != len(numbers):
            raise InvalidAmountError("Item numbers must be unique within a document")
        items_total = sum((line.consumed_amount for line in lines_in), ZERO)
        if items_total != amount:
            raise InvalidAmountError(
                f"Item amounts ({items_total}) do not match deduction amount ({amount})"
            )

        async with self._transaction():
            # Lock order: document key, then budget rows by ascending id.
            await self._consumptions.lock_document(document_type, document_id)
            existing = await self._consumptions.lock_lines(
                document_type, document_id, numbers
            )
            locked = await self._budgets.lock_many(
                [budget_id, *(line.budget_id for line in existing.values())]
            )
            budget = locked.get(budget_id)
            if budget is None:
                raise BudgetNotFoundError(budget_id)
            before = budget.available_amount

            previously_here = ZERO
            for line in existing.values():
                if line.budget_id == budget.id:
                    previously_here += line.consumed_amount
                elif line.consumed_amount > ZERO:
                    released = await self._budgets.increment_available(
                        line.budget_id, line.consumed_amount
                    )
                    if released is None:
                        raise BudgetNotFoundError(line.budget_id)
                    previous = locked.get(line.budget_id)
                    if previous is not None:
                        self._set_balance(previous, released)

            charged = items_total - previously_here
            if charged > before:
                raise self._reject_insufficient(budget, charged, before)
            after = before
            if charged > ZERO:
                change = await self._budgets.decrement_available(budget.id, charged)
                if change is None:
                    raise self._reject_insufficient(budget, charged, before)
                after = self._set_balance(budget, change)
            elif charged < ZERO:
                change = await self._budgets.increment_available(budget.id, -charged)
                if change is None:
                    raise BudgetNotFoundError(budget.id)
                after = self._set_balance(budget, change)

            stored: list[BudgetConsumption] = []
            for line in lines_in:
                row = await self._consumptions.upsert_line(
                    budget_id=budget.id,
                    document_type=document_type,
                    document_id=document_id,
                    item_number=line.item_number,
                    consumed_amount=line.consumed_amount,
                    budget_allocation_id=line.budget_allocation_id,
                    transfer_trace_id=line.transfer_trace_id or transfer_trace_id,
                )
                if row is not None:
                    stored.append(row)

            figures = {
                "budget_id": budget.id,
                "document_type": document_type,
                "document_id": document_id,
                "amount": amount,
                "charged": charged,
                "transfer_trace_id": transfer_trace_id,
                "available_before": before,
                "available_after": after,
                "items": [
                    {"item_number": line.item_number, "amount": line.consumed_amount}
                    for line in lines_in
                ],
            }
            await self._events.emit("budget.deducted", figures)

        logger.info(
            "budget_deducted",
            budget_id=str(budget.id),
            document_id=document_id,
            amount=str(amount),
            charged=str(charged),
        )
        await self._audit(
            "DEDUCT",
            "Budget",
            budget.id,
            old_values={"available_amount": before},
            new_values={"available_amount": after},
            key_figures=figures,
        )
        return DeductionResult(budget=budget, lines=stored, charged=charged)
