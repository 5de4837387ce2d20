"""Tenant-scoped data access.

``TenantScopedRepository`` is the only way ledger code touches
tenant-owned tables. Scoping is structural: every statement it builds is
conjoined with ``tenant_id = <bound tenant>``, every insert has
``tenant_id`` overwritten with the bound tenant, and reads of
soft-deletable entities carry the ``deleted_at IS NULL`` predicate.

Rules, applied per call::

    read-many / count / update-many / delete-many
        WHERE tenant_id = :bound AND (<caller criteria>)
    read-one by primary key
        coerced to a first-match SELECT so the tenant filter applies
    update / delete by id
        WHERE id = :id AND tenant_id = :bound  (foreign rows -> "not found")
    create / create-many
        tenant_id forced on every row
    upsert
        tenant_id forced on the insert row and on the conflict match

Nothing bound:
    raises ``TenantUnboundError`` before any SQL is issued, unless the
    repository was built with ``allow_unbound=True`` (provisioning), in
    which case statements pass through unmodified. Entities outside
    ``TENANT_OWNED_MODELS`` always pass through.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import ColumnElement, Select, and_, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import InstrumentedAttribute

from procurement_ledger.errors import TenantUnboundError
from procurement_ledger.storage.orm import TENANT_OWNED_MODELS, Base
from procurement_ledger.tenancy.context import current_tenant_id

ModelT = TypeVar("ModelT", bound=Base)

TENANT_COLUMN = "tenant_id"
SOFT_DELETE_COLUMN = "deleted_at"


class TenantScopedRepository(Generic[ModelT]):
    """Generic repository enforcing tenant isolation on one entity.

    Subclasses set ``model`` and add domain queries built on the
    protected helpers (``_scoped_select``, ``_scope``), never on raw
    ``select(model)``.
    """

    model: ClassVar[type[Base]]

    def __init__(self, session: AsyncSession, *, allow_unbound: bool = False) -> None:
        self._session = session
        self._allow_unbound = allow_unbound

    # ── Scoping ──

    @classmethod
    def is_tenant_owned(cls) -> bool:
        return cls.model in TENANT_OWNED_MODELS

    @classmethod
    def is_soft_deletable(cls) -> bool:
        return SOFT_DELETE_COLUMN in cls.model.__table__.columns

    @classmethod
    def _col(cls, name: str) -> InstrumentedAttribute[Any]:
        column: InstrumentedAttribute[Any] = getattr(cls.model, name)
        return column

    def _bound_tenant(self, operation: str) -> uuid.UUID | None:
        """Return the tenant to scope by, or None for pass-through.

        Raises:
            TenantUnboundError: Entity is tenant-owned, nothing is bound
                and this repository does not allow unbound access.
        """
        if not self.is_tenant_owned():
            return None
        tenant_id = current_tenant_id()
        if tenant_id is None and not self._allow_unbound:
            raise TenantUnboundError(f"{operation} on {self.model.__tablename__}")
        return tenant_id

    def _scope(
        self,
        operation: str,
        criteria: Sequence[ColumnElement[bool]] = (),
        *,
        include_deleted: bool = False,
        active_only: bool = True,
    ) -> list[ColumnElement[bool]]:
        """Build the WHERE conjuncts for one statement.

        Caller criteria are grouped into a single conjunct, so an ``OR``
        supplied by the caller can never widen past the tenant filter.
        """
        conditions: list[ColumnElement[bool]] = []
        tenant_id = self._bound_tenant(operation)
        if tenant_id is not None:
            conditions.append(self._col(TENANT_COLUMN) == tenant_id)
        if active_only and not include_deleted and self.is_soft_deletable():
            conditions.append(self._col(SOFT_DELETE_COLUMN).is_(None))
        if criteria:
            conditions.append(and_(*criteria))
        return conditions

    def _force_tenant(
        self, values: Mapping[str, Any], operation: str
    ) -> dict[str, Any]:
        row = dict(values)
        tenant_id = self._bound_tenant(operation)
        if tenant_id is not None:
            row[TENANT_COLUMN] = tenant_id
        return row

    @staticmethod
    def _strip_tenant(values: Mapping[str, Any]) -> dict[str, Any]:
        """Drop tenant_id from UPDATE payloads; rows never change tenant."""
        return {k: v for k, v in values.items() if k != TENANT_COLUMN}

    def _scoped_select(
        self,
        *criteria: ColumnElement[bool],
        include_deleted: bool = False,
        operation: str = "find",
    ) -> Select[tuple[ModelT]]:
        stmt: Select[tuple[ModelT]] = select(self.model)  # type: ignore[assignment]
        conditions = self._scope(operation, criteria, include_deleted=include_deleted)
        if conditions:
            stmt = stmt.where(*conditions)
        return stmt

    # ── Reads ──

    async def find_first(
        self,
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] = (),
        for_update: bool = False,
        include_deleted: bool = False,
    ) -> ModelT | None:
        """First row matching ``criteria`` within the bound tenant."""
        stmt = self._scoped_select(
            *criteria, include_deleted=include_deleted, operation="find_first"
        )
        if order_by:
            stmt = stmt.order_by(*order_by)
        if for_update:
            stmt = stmt.with_for_update(of=self.model)
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def get(
        self,
        entity_id: uuid.UUID,
        *,
        for_update: bool = False,
        include_deleted: bool = False,
    ) -> ModelT | None:
        """Primary-key read, always filtered by tenant.

        Deliberately not ``session.get()``: the identity map would return
        a cached row without consulting the tenant filter.
        """
        return await self.find_first(
            self._col("id") == entity_id,
            for_update=for_update,
            include_deleted=include_deleted,
        )

    async def find_many(
        self,
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] = (),
        limit: int | None = None,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[ModelT]:
        stmt = self._scoped_select(
            *criteria, include_deleted=include_deleted, operation="find_many"
        )
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(
        self,
        *criteria: ColumnElement[bool],
        include_deleted: bool = False,
    ) -> int:
        stmt = select(func.count()).select_from(self.model)
        conditions = self._scope("count", criteria, include_deleted=include_deleted)
        if conditions:
            stmt = stmt.where(*conditions)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    # ── Writes ──

    async def create(self, **values: Any) -> ModelT:
        """Insert one row; ``tenant_id`` is always the bound tenant."""
        entity = self.model(**self._force_tenant(values, "create"))
        self._session.add(entity)
        await self._session.flush()
        return entity  # type: ignore[return-value]

    async def create_many(self, rows: Sequence[Mapping[str, Any]]) -> list[ModelT]:
        """Insert several rows; ``tenant_id`` is forced on each of them."""
        entities = [
            self.model(**self._force_tenant(row, "create_many")) for row in rows
        ]
        self._session.add_all(entities)
        await self._session.flush()
        return entities  # type: ignore[return-value]

    async def update(
        self,
        entity_id: uuid.UUID,
        values: Mapping[str, Any],
        *criteria: ColumnElement[bool],
    ) -> bool:
        """Update one row by id.

        Returns False when no row matched: absent, soft-deleted, failing
        the extra ``criteria`` or owned by another tenant. The caller
        cannot tell those apart.
        """
        return await self._update_returning_id(entity_id, values, *criteria) is not None

    async def _update_returning_id(
        self,
        entity_id: uuid.UUID,
        values: Mapping[str, Any],
        *criteria: ColumnElement[bool],
        returning: Sequence[Any] = (),
    ) -> Any:
        conditions = self._scope("update", (self._col("id") == entity_id, *criteria))
        stmt = (
            update(self.model)
            .where(*conditions)
            .values(**self._strip_tenant(values))
            .returning(self._col("id"), *returning)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.one_or_none()

    async def update_many(
        self,
        values: Mapping[str, Any],
        *criteria: ColumnElement[bool],
    ) -> int:
        conditions = self._scope("update_many", criteria)
        stmt = (
            update(self.model)
            .where(*conditions)
            .values(**self._strip_tenant(values))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount)  # type: ignore[attr-defined]

    async def delete(self, entity_id: uuid.UUID) -> bool:
        """Hard-delete one row by id; False when not found in this tenant."""
        conditions = self._scope(
            "delete", (self._col("id") == entity_id,), active_only=False
        )
        stmt = (
            delete(self.model)
            .where(*conditions)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def delete_many(self, *criteria: ColumnElement[bool]) -> int:
        conditions = self._scope("delete_many", criteria, active_only=False)
        stmt = (
            delete(self.model)
            .where(*conditions)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount)  # type: ignore[attr-defined]

    async def soft_delete(self, entity_id: uuid.UUID) -> bool:
        """Tombstone one active row; it stays referenced by history."""
        if not self.is_soft_deletable():
            msg = f"{self.model.__tablename__} does not support soft delete"
            raise TypeError(msg)
        return await self.update(entity_id, {SOFT_DELETE_COLUMN: func.now()})

    async def upsert(
        self,
        *,
        conflict_columns: Sequence[str],
        create: Mapping[str, Any],
        update_values: Mapping[str, Any],
    ) -> ModelT | None:
        """INSERT ... ON CONFLICT DO UPDATE, returning the stored row.

        ``tenant_id`` is forced on the insert row, added to the conflict
        target and to the conflict-update WHERE, so a match can only ever
        be a row of the bound tenant.
        """
        row = self._force_tenant(create, "upsert")
        tenant_id = row.get(TENANT_COLUMN) if self.is_tenant_owned() else None

        index_elements = list(conflict_columns)
        where: ColumnElement[bool] | None = None
        if tenant_id is not None:
            if TENANT_COLUMN not in index_elements:
                index_elements.insert(0, TENANT_COLUMN)
            where = self._col(TENANT_COLUMN) == tenant_id

        stmt = (
            pg_insert(self.model)
            .values(**row)
            .on_conflict_do_update(
                index_elements=index_elements,
                set_=self._strip_tenant(update_values),
                where=where,
            )
            .returning(self.model)
        )
        result = await self._session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        return result.scalar_one_or_none()  # type: ignore[no-any-return]
