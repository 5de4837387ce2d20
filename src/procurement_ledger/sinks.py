"""Audit and event sinks fed by ledger mutations.

``EventSink.emit`` is called inside the ledger transaction, so an
outbox row commits or rolls back together with the mutation.

``AuditSink.record`` is called after commit. The database-backed sink
writes in its own session and never raises: a failed audit write is
logged and the already-committed mutation stands.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog
from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from procurement_ledger.storage.repositories import AuditLogRepository, OutboxRepository

logger = structlog.get_logger()


class AuditSink(Protocol):
    async def record(
        self,
        *,
        action: str,
        target_type: str,
        target_id: str,
        user_id: str | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        key_figures: dict[str, Any] | None = None,
    ) -> None: ...


class EventSink(Protocol):
    async def emit(self, topic: str, payload: dict[str, Any]) -> None: ...


def _jsonable(values: dict[str, Any] | None) -> dict[str, Any] | None:
    """Make Decimal / UUID / datetime values storable in JSONB."""
    if values is None:
        return None
    result: dict[str, Any] = to_jsonable_python(values)
    return result


class DatabaseAuditSink:
    """Persist audit entries to ``audit_logs`` for the bound tenant.

    Args:
        session_factory: Async session factory; each entry is written
            in a separate session so it cannot disturb the caller's.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        *,
        action: str,
        target_type: str,
        target_id: str,
        user_id: str | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        key_figures: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                await AuditLogRepository(session).create(
                    action=action,
                    target_type=target_type,
                    target_id=target_id,
                    user_id=user_id,
                    old_values=_jsonable(old_values),
                    new_values=_jsonable(new_values),
                    key_figures=_jsonable(key_figures),
                )
                await session.commit()
        except Exception:
            logger.exception(
                "audit_record_failed",
                action=action,
                target_type=target_type,
                target_id=target_id,
            )


class OutboxEventSink:
    """Write events to ``outbox_events`` in the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._outbox = OutboxRepository(session)

    async def emit(self, topic: str, payload: dict[str, Any]) -> None:
        await self._outbox.create(topic=topic, payload=_jsonable(payload))
        logger.debug("outbox_event_written", topic=topic)
