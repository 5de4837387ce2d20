"""Request-scoped tenant binding.

The bound tenant lives in a ``ContextVar``, so every asyncio task (and
therefore every concurrent request) sees its own value. Only the request
binding dependency and provisioning entry points call ``bind_tenant``;
ledger code reads the value and never rebinds it.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import ParamSpec, TypeVar

import structlog

from procurement_ledger.errors import TenantUnboundError

P = ParamSpec("P")
T = TypeVar("T")

_current_tenant: ContextVar[uuid.UUID | None] = ContextVar(
    "current_tenant", default=None
)


def current_tenant_id() -> uuid.UUID | None:
    """Return the tenant bound to the current context, or None if unbound."""
    return _current_tenant.get()


def require_tenant_id(operation: str = "operation") -> uuid.UUID:
    """Return the bound tenant id, failing closed when nothing is bound.

    Raises:
        TenantUnboundError: No tenant is bound in the current context.
    """
    tenant_id = _current_tenant.get()
    if tenant_id is None:
        raise TenantUnboundError(operation)
    return tenant_id


@contextmanager
def bind_tenant(tenant_id: uuid.UUID | None) -> Iterator[uuid.UUID | None]:
    """Bind ``tenant_id`` for the dynamic extent of the ``with`` block.

    Binding ``None`` explicitly runs the block unbound, which is what
    provisioning and authentication paths need. The previous binding is
    restored on exit, so nested scopes behave like a stack.

    Usage::

        with bind_tenant(tenant.id):
            await ledger.transfer(...)
    """
    token = _current_tenant.set(tenant_id)
    with structlog.contextvars.bound_contextvars(
        tenant_id=str(tenant_id) if tenant_id is not None else None
    ):
        try:
            yield tenant_id
        finally:
            _current_tenant.reset(token)


async def run_with_tenant(
    tenant_id: uuid.UUID | None,
    fn: Callable[P, Awaitable[T]],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    """Await ``fn(*args, **kwargs)`` with ``tenant_id`` bound."""
    with bind_tenant(tenant_id):
        return await fn(*args, **kwargs)
