"""Traceability API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from procurement_ledger.api.deps import get_usage_reporter
from procurement_ledger.api.errors import ledger_http_error
from procurement_ledger.errors import LedgerError
from procurement_ledger.models.reports import TraceReport
from procurement_ledger.usage_report import UsageReporter

router = APIRouter(tags=["traces"])


@router.get("/{tenant}/traces/{trace_id}")
async def get_trace(
    trace_id: Annotated[str, Path(min_length=1, max_length=100)],
    reporter: Annotated[UsageReporter, Depends(get_usage_reporter)],
) -> TraceReport:
    """Follow one trace id from its fund movement to every consumption line."""
    try:
        return await reporter.trace(trace_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
