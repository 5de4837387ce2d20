"""FastAPI application with lifespan management."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from procurement_ledger import __version__
from procurement_ledger.api.middleware import RequestLoggingMiddleware
from procurement_ledger.api.routes.budgets import router as budgets_router
from procurement_ledger.api.routes.traces import router as traces_router
from procurement_ledger.config import settings
from procurement_ledger.logging_config import configure_logging
from procurement_ledger.storage.database import async_session, engine

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application startup and shutdown.

    Startup:
        - Configure structured logging.
    Shutdown:
        - Dispose database engine (close connection pool).
    """
    configure_logging(
        environment=str(settings.environment),
        log_level=settings.log_level,
    )
    logger.info("app_started", environment=str(settings.environment))
    yield

    await engine.dispose()
    logger.info("app_stopped")


app = FastAPI(
    title="Procurement Ledger",
    description="Multi-tenant procurement budget ledger",
    version=__version__,
    lifespan=lifespan,
    debug=settings.is_dev,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)


HEALTH_CHECK_TIMEOUT = 5.0


@app.get("/health")
async def health() -> JSONResponse:
    """Deep health check: verifies DB connectivity."""
    checks: dict[str, str] = {}
    overall = "ok"

    try:
        async with async_session() as session:
            await asyncio.wait_for(
                session.execute(text("SELECT 1")),
                timeout=HEALTH_CHECK_TIMEOUT,
            )
        checks["db"] = "ok"
    except (TimeoutError, SQLAlchemyError) as e:
        logger.warning("health_check_db_error", error=type(e).__name__)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"
    except Exception as e:
        logger.error("health_check_db_unexpected", error=str(e), exc_info=True)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"

    status_code = 200 if overall == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": overall,
            "checks": checks,
            "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.include_router(budgets_router, prefix=settings.api_prefix)
app.include_router(traces_router, prefix=settings.api_prefix)
