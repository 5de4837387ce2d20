"""SQLAlchemy ORM models for all project entities."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

import uuid_utils as uuid7_lib
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from procurement_ledger.models.budget import (
    BudgetType,
    DocumentType,
    OrgUnitType,
    TransferType,
)

MONEY = Numeric(18, 2)


def _uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-ordered) for use as default PK value."""
    return uuid.UUID(bytes=uuid7_lib.uuid7().bytes)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


# ──────────────────────────────────────────────
# Multi-Tenant Auth
# ──────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    name: Mapped[str] = mapped_column(String(200), unique=True)
    subdomain: Mapped[str] = mapped_column(String(63), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    api_keys: Mapped[list["APIKey"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan"
    )


class APIKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE")
    )
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(80))
    label: Mapped[str] = mapped_column(String(100), default="default")
    is_active: Mapped[bool] = mapped_column(default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship(back_populates="api_keys")


# ──────────────────────────────────────────────
# Organization Structure
# ──────────────────────────────────────────────


class OrgUnit(Base):
    """Node in a tenant's organizational hierarchy (adjacency list).

    ``level`` is derived from the parent at creation (roots are 0) and
    grows by exactly one per step towards the leaves.
    """

    __tablename__ = "org_units"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_org_units_tenant_code"),
        CheckConstraint("level >= 0", name="chk_org_units_level_nonneg"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("org_units.id", ondelete="RESTRICT"), index=True
    )
    level: Mapped[int] = mapped_column(Integer, default=0)
    type: Mapped[OrgUnitType] = mapped_column(
        Enum(OrgUnitType, name="org_unit_type_enum")
    )
    code: Mapped[str] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    parent: Mapped["OrgUnit | None"] = relationship(remote_side="OrgUnit.id")


# ──────────────────────────────────────────────
# Budget Ledger
# ──────────────────────────────────────────────


class Budget(Base):
    """Fund pool for one (tenant, fiscal year, org unit).

    ``available_amount`` is the ledger balance. It is only ever changed
    by guarded UPDATE statements in ``BudgetRepository``; the check
    constraint is the last line against overdraft.
    """

    __tablename__ = "budgets"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "fiscal_year",
            "org_unit_id",
            name="uq_budgets_tenant_year_org_unit",
        ),
        CheckConstraint("available_amount >= 0", name="chk_budgets_available_nonneg"),
        CheckConstraint("total_amount > 0", name="chk_budgets_total_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    fiscal_year: Mapped[str] = mapped_column(String(10))
    org_unit_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("org_units.id", ondelete="RESTRICT"), index=True
    )
    type: Mapped[BudgetType] = mapped_column(Enum(BudgetType, name="budget_type_enum"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY)
    available_amount: Mapped[Decimal] = mapped_column(MONEY)
    config_id: Mapped[str | None] = mapped_column(String(100))
    transfer_origin_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    org_unit: Mapped["OrgUnit"] = relationship(lazy="joined", innerjoin=True)


class BudgetAllocation(Base):
    """Immutable record of funds distributed from a budget to an org unit."""

    __tablename__ = "budget_allocations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_budget_allocations_amount_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    budget_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("budgets.id", ondelete="RESTRICT"), index=True
    )
    from_org_unit_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("org_units.id", ondelete="RESTRICT")
    )
    to_org_unit_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("org_units.id", ondelete="RESTRICT")
    )
    amount: Mapped[Decimal] = mapped_column(MONEY)
    reason: Mapped[str | None] = mapped_column(Text)
    trace_id: Mapped[str] = mapped_column(String(100), index=True)
    allocated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    to_org_unit: Mapped["OrgUnit"] = relationship(
        foreign_keys=[to_org_unit_id], lazy="joined", innerjoin=True
    )


class BudgetTransfer(Base):
    """Immutable record of funds moved between two budgets.

    The transfer id doubles as the trace id carried by downstream
    consumption lines.
    """

    __tablename__ = "budget_transfers"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_budget_transfers_amount_positive"),
        CheckConstraint(
            "source_budget_id <> target_budget_id",
            name="chk_budget_transfers_distinct",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    source_budget_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("budgets.id", ondelete="RESTRICT"), index=True
    )
    target_budget_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("budgets.id", ondelete="RESTRICT"), index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY)
    transfer_type: Mapped[TransferType] = mapped_column(
        Enum(TransferType, name="transfer_type_enum")
    )
    trace_flag: Mapped[bool] = mapped_column(Boolean, default=True)
    approval_chain: Mapped[list[Any] | None] = mapped_column(JSONB)
    transferred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    source_budget: Mapped["Budget"] = relationship(
        foreign_keys=[source_budget_id], lazy="joined", innerjoin=True
    )
    target_budget: Mapped["Budget"] = relationship(
        foreign_keys=[target_budget_id], lazy="joined", innerjoin=True
    )


class BudgetConsumption(Base):
    """Budget spend recorded against one PO / invoice / PR line item.

    Unique per (tenant, document type, document id, item) so a
    resubmitted line updates in place instead of being counted twice.
    A PO and an invoice may share a document id.
    """

    __tablename__ = "budget_consumptions"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "document_type",
            "document_id",
            "item_number",
            name="uq_budget_consumptions_tenant_document_item",
        ),
        CheckConstraint(
            "consumed_amount >= 0", name="chk_budget_consumptions_amount_nonneg"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    budget_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("budgets.id", ondelete="RESTRICT"), index=True
    )
    document_type: Mapped[DocumentType] = mapped_column(
        Enum(DocumentType, name="document_type_enum")
    )
    document_id: Mapped[str] = mapped_column(String(100))
    item_number: Mapped[int] = mapped_column(Integer)
    consumed_amount: Mapped[Decimal] = mapped_column(MONEY)
    budget_allocation_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("budget_allocations.id", ondelete="SET NULL")
    )
    transfer_trace_id: Mapped[str | None] = mapped_column(String(100), index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ──────────────────────────────────────────────
# Audit & Outbox
# ──────────────────────────────────────────────


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str | None] = mapped_column(String(100))
    action: Mapped[str] = mapped_column(String(50))
    target_type: Mapped[str] = mapped_column(String(50))
    target_id: Mapped[str] = mapped_column(String(100), index=True)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    key_figures: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class OutboxEvent(Base):
    """Event written in the same transaction as the mutation it describes."""

    __tablename__ = "outbox_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_uuid7)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    topic: Mapped[str] = mapped_column(String(100), index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )


TENANT_OWNED_MODELS: frozenset[type[Base]] = frozenset(
    {
        OrgUnit,
        Budget,
        BudgetAllocation,
        BudgetTransfer,
        BudgetConsumption,
        AuditLog,
        OutboxEvent,
    }
)
"""Entities whose every read and write is scoped to the bound tenant."""
