"""Shared fixtures for integration tests requiring live PostgreSQL.

Seeds are committed for real (the ledger owns its transactions) and
removed after each test by tenant id, children before parents.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass

import pytest
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from procurement_ledger.config import get_settings
from procurement_ledger.models.budget import OrgUnitType
from procurement_ledger.storage.orm import (
    AuditLog,
    Budget,
    BudgetAllocation,
    BudgetConsumption,
    BudgetTransfer,
    OrgUnit,
    OutboxEvent,
    Tenant,
)
from procurement_ledger.storage.repositories import OrgUnitRepository
from procurement_ledger.tenancy.context import bind_tenant


@dataclass(frozen=True)
class SeededTenant:
    """Committed tenant with a small org tree.

    ``hq`` (level 0) has two divisions (level 1); ``div_a`` has one
    department (level 2).
    """

    tenant_id: uuid.UUID
    subdomain: str
    hq: uuid.UUID
    div_a: uuid.UUID
    div_b: uuid.UUID
    dept: uuid.UUID


# ── Engine (function-scoped: one event loop per test) ──────────────


@pytest.fixture()
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        get_settings().database_url,
        pool_size=10,
        max_overflow=0,
    )
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(
    async_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Committed seeds ────────────────────────────────────────────────


async def _seed(factory: async_sessionmaker[AsyncSession]) -> SeededTenant:
    suffix = uuid.uuid4().hex[:8]
    async with factory() as session:
        tenant = Tenant(name=f"test-tenant-{suffix}", subdomain=f"t-{suffix}")
        session.add(tenant)
        await session.flush()

        with bind_tenant(tenant.id):
            units = OrgUnitRepository(session)
            hq = await units.create_unit(
                code="HQ", name="Headquarters", type=OrgUnitType.COMPANY
            )
            div_a = await units.create_unit(
                code="DIV-A",
                name="Division A",
                type=OrgUnitType.DIVISION,
                parent_id=hq.id,
            )
            div_b = await units.create_unit(
                code="DIV-B",
                name="Division B",
                type=OrgUnitType.DIVISION,
                parent_id=hq.id,
            )
            dept = await units.create_unit(
                code="DEP-A1",
                name="Department A1",
                type=OrgUnitType.DEPARTMENT,
                parent_id=div_a.id,
            )
        await session.commit()

    return SeededTenant(
        tenant_id=tenant.id,
        subdomain=tenant.subdomain,
        hq=hq.id,
        div_a=div_a.id,
        div_b=div_b.id,
        dept=dept.id,
    )


async def _cleanup(
    factory: async_sessionmaker[AsyncSession], tenant_id: uuid.UUID
) -> None:
    async with factory() as session:
        for model in (
            OutboxEvent,
            AuditLog,
            BudgetConsumption,
            BudgetTransfer,
            BudgetAllocation,
            Budget,
        ):
            await session.execute(delete(model).where(model.tenant_id == tenant_id))
        # Leaves before parents; the self reference is RESTRICT.
        for level in (2, 1, 0):
            await session.execute(
                delete(OrgUnit).where(
                    OrgUnit.tenant_id == tenant_id, OrgUnit.level == level
                )
            )
        await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
        await session.commit()


@pytest.fixture()
async def seed_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[Callable[[], Awaitable[SeededTenant]]]:
    """Create any number of seeded tenants; all are removed afterwards."""
    created: list[uuid.UUID] = []

    async def _make() -> SeededTenant:
        seeded = await _seed(session_factory)
        created.append(seeded.tenant_id)
        return seeded

    yield _make

    for tenant_id in created:
        await _cleanup(session_factory, tenant_id)


@pytest.fixture()
async def seeded(
    seed_factory: Callable[[], Awaitable[SeededTenant]],
) -> SeededTenant:
    return await seed_factory()
