"""initial_ledger_schema

Tenants and API keys, org hierarchy, budgets with their allocation,
transfer and consumption history, audit log and transactional outbox.

Revision ID: 0a1c7e52d9f3
Revises:
Create Date: 2026-10-19 09:12:41.305218

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0a1c7e52d9f3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(18, 2)

org_unit_type_enum = sa.Enum(
    "COMPANY", "DIVISION", "DEPARTMENT", "PURCHASING_GROUP", name="org_unit_type_enum"
)
budget_type_enum = sa.Enum(
    "DIVISION", "DEPARTMENT", "STAFF", "PROJECT", name="budget_type_enum"
)
transfer_type_enum = sa.Enum("SAME_LEVEL", "CROSS_LEVEL", name="transfer_type_enum")
document_type_enum = sa.Enum("PO", "INVOICE", "PR", name="document_type_enum")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _tenant_fk() -> sa.Column:
    return sa.Column(
        "tenant_id",
        sa.Uuid(),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    """Create every ledger table with its constraints and indexes."""
    # --- tenants / api_keys ---
    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_tenants_subdomain", "tenants", ["subdomain"], unique=True)

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(80), nullable=False),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    # --- org_units ---
    op.create_table(
        "org_units",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column(
            "parent_id",
            sa.Uuid(),
            sa.ForeignKey("org_units.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("type", org_unit_type_enum, nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "code", name="uq_org_units_tenant_code"),
        sa.CheckConstraint("level >= 0", name="chk_org_units_level_nonneg"),
    )
    op.create_index("ix_org_units_tenant_id", "org_units", ["tenant_id"])
    op.create_index("ix_org_units_parent_id", "org_units", ["parent_id"])

    # --- budgets ---
    op.create_table(
        "budgets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("fiscal_year", sa.String(10), nullable=False),
        sa.Column(
            "org_unit_id",
            sa.Uuid(),
            sa.ForeignKey("org_units.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("type", budget_type_enum, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("available_amount", MONEY, nullable=False),
        sa.Column("config_id", sa.String(100), nullable=True),
        sa.Column("transfer_origin_id", sa.Uuid(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "tenant_id",
            "fiscal_year",
            "org_unit_id",
            name="uq_budgets_tenant_year_org_unit",
        ),
        sa.CheckConstraint(
            "available_amount >= 0", name="chk_budgets_available_nonneg"
        ),
        sa.CheckConstraint("total_amount > 0", name="chk_budgets_total_positive"),
    )
    op.create_index("ix_budgets_tenant_id", "budgets", ["tenant_id"])
    op.create_index("ix_budgets_org_unit_id", "budgets", ["org_unit_id"])

    # --- budget_allocations ---
    op.create_table(
        "budget_allocations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column(
            "budget_id",
            sa.Uuid(),
            sa.ForeignKey("budgets.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "from_org_unit_id",
            sa.Uuid(),
            sa.ForeignKey("org_units.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "to_org_unit_id",
            sa.Uuid(),
            sa.ForeignKey("org_units.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("trace_id", sa.String(100), nullable=False),
        sa.Column(
            "allocated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "amount > 0", name="chk_budget_allocations_amount_positive"
        ),
    )
    op.create_index(
        "ix_budget_allocations_tenant_id", "budget_allocations", ["tenant_id"]
    )
    op.create_index(
        "ix_budget_allocations_budget_id", "budget_allocations", ["budget_id"]
    )
    op.create_index(
        "ix_budget_allocations_trace_id", "budget_allocations", ["trace_id"]
    )

    # --- budget_transfers ---
    op.create_table(
        "budget_transfers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column(
            "source_budget_id",
            sa.Uuid(),
            sa.ForeignKey("budgets.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "target_budget_id",
            sa.Uuid(),
            sa.ForeignKey("budgets.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("transfer_type", transfer_type_enum, nullable=False),
        sa.Column("trace_flag", sa.Boolean(), nullable=False),
        sa.Column(
            "approval_chain", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column(
            "transferred_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint("amount > 0", name="chk_budget_transfers_amount_positive"),
        sa.CheckConstraint(
            "source_budget_id <> target_budget_id",
            name="chk_budget_transfers_distinct",
        ),
    )
    op.create_index("ix_budget_transfers_tenant_id", "budget_transfers", ["tenant_id"])
    op.create_index(
        "ix_budget_transfers_source_budget_id", "budget_transfers", ["source_budget_id"]
    )
    op.create_index(
        "ix_budget_transfers_target_budget_id", "budget_transfers", ["target_budget_id"]
    )

    # --- budget_consumptions ---
    op.create_table(
        "budget_consumptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column(
            "budget_id",
            sa.Uuid(),
            sa.ForeignKey("budgets.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("document_type", document_type_enum, nullable=False),
        sa.Column("document_id", sa.String(100), nullable=False),
        sa.Column("item_number", sa.Integer(), nullable=False),
        sa.Column("consumed_amount", MONEY, nullable=False),
        sa.Column(
            "budget_allocation_id",
            sa.Uuid(),
            sa.ForeignKey("budget_allocations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("transfer_trace_id", sa.String(100), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint(
            "tenant_id",
            "document_type",
            "document_id",
            "item_number",
            name="uq_budget_consumptions_tenant_document_item",
        ),
        sa.CheckConstraint(
            "consumed_amount >= 0", name="chk_budget_consumptions_amount_nonneg"
        ),
    )
    op.create_index(
        "ix_budget_consumptions_tenant_id", "budget_consumptions", ["tenant_id"]
    )
    op.create_index(
        "ix_budget_consumptions_budget_id", "budget_consumptions", ["budget_id"]
    )
    op.create_index(
        "ix_budget_consumptions_transfer_trace_id",
        "budget_consumptions",
        ["transfer_trace_id"],
    )

    # --- audit_logs / outbox_events ---
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("target_type", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=False),
        sa.Column("old_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("new_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "key_figures", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        _created_at(),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
    op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column("topic", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _created_at(),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_outbox_events_tenant_id", "outbox_events", ["tenant_id"])
    op.create_index("ix_outbox_events_topic", "outbox_events", ["topic"])
    op.create_index("ix_outbox_events_published_at", "outbox_events", ["published_at"])


def downgrade() -> None:
    """Drop every ledger table and enum type."""
    op.drop_table("outbox_events")
    op.drop_table("audit_logs")
    op.drop_table("budget_consumptions")
    op.drop_table("budget_transfers")
    op.drop_table("budget_allocations")
    op.drop_table("budgets")
    op.drop_table("org_units")
    op.drop_table("api_keys")
    op.drop_table("tenants")

    bind = op.get_bind()
    document_type_enum.drop(bind, checkfirst=True)
    transfer_type_enum.drop(bind, checkfirst=True)
    budget_type_enum.drop(bind, checkfirst=True)
    org_unit_type_enum.drop(bind, checkfirst=True)
