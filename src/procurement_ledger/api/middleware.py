"""HTTP request logging middleware."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code and latency.

    A request id (taken from ``X-Request-ID`` or generated) is bound to
    structlog contextvars for the request and echoed in the response.
    Ledger events logged while serving the request carry it, next to
    the ``tenant_id`` bound by the tenant binding dependency.
    """

    SKIP_PATHS: frozenset[str] = frozenset(
        {"/health", "/docs", "/openapi.json", "/redoc"}
    )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        start = time.perf_counter()
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "http_request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                latency_ms=latency_ms,
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
