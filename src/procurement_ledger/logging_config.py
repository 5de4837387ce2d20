"""Structured logging for the ledger service.

Every event passes through the same chain: request/tenant context from
contextvars, level and timestamp, ledger value normalisation and
credential redaction. Production renders JSON lines, every other
environment a colored console.
"""

import logging
import sys
import uuid
from decimal import Decimal
from enum import Enum

import structlog

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"api_key", "key_hash", "password", "secret", "token", "authorization"}
)
REDACTED = "***REDACTED***"

# Loggers that flood the output at INFO with per-request/per-statement lines.
QUIET_LOGGERS: tuple[str, ...] = ("uvicorn.access", "sqlalchemy.engine")


def _is_sensitive(key: str) -> bool:
    # Header-style names ("X-API-Key") and prefixed names ("new_api_key").
    normalized = key.lower().replace("-", "_")
    return any(
        normalized == name or normalized.endswith(f"_{name}")
        for name in SENSITIVE_KEYS
    )


def _redact_sensitive_keys(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Replace credential values before any renderer sees them."""
    for key in event_dict:
        if _is_sensitive(key):
            event_dict[key] = REDACTED
    return event_dict


def _stringify_ledger_values(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Render amounts, ids and enum members as plain strings.

    Money is logged exactly as stored (``Decimal("5000.00")`` becomes
    ``"5000.00"``), never through float or ``repr``.
    """
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = str(value.value)
        elif isinstance(value, Decimal | uuid.UUID):
            event_dict[key] = str(value)
    return event_dict


def _renderer(environment: str) -> structlog.types.Processor:
    if environment == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def configure_logging(
    environment: str = "development",
    log_level: str = "INFO",
) -> None:
    """Install the processor chain and route stdlib logging through it.

    ``merge_contextvars`` runs first, so the ``tenant_id`` bound by
    ``tenancy.context`` and the ``request_id`` bound by the request
    middleware land on every event logged while serving a request.

    Args:
        environment: 'production' for JSON output, anything else
            for colored console output.
        log_level: Python log level name (DEBUG, INFO, WARNING, etc.).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _stringify_ledger_values,
        _redact_sensitive_keys,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(environment),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
