"""
Structured logging configuration using structlog.

Provides JSON-formatted logs for deployments (searchable/aggregatable)
and human-readable colored output for development.

Usage:
    from legis_sync.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("page fetched", entity_type="votacao", page=3, records=100)

Output with LOG_JSON=true:
    {"event": "page fetched", "entity_type": "votacao", "page": 3, "records": 100,
     "run_id": "run_5f2a...", "timestamp": "2024-01-01T12:00:00Z", "level": "info"}

Output in development (colored):
    2024-01-01 12:00:00 [info     ] page fetched    entity_type=votacao page=3 records=100
"""

import logging
import sys
from typing import Any

import structlog

from legis_sync.core.config import settings

IS_TEST = "pytest" in sys.modules


def configure_logging(json_output: bool | None = None, level: str | None = None) -> None:
    """Configure structlog with appropriate processors for the environment."""
    if json_output is None:
        json_output = settings.LOG_JSON
    log_level = logging.getLevelName((level or settings.LOG_LEVEL).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Shared processors for all environments
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Standard logging for third-party libraries and the db layer
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # Reduce noise from chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A structlog bound logger with JSON/console output based on settings
    """
    return structlog.get_logger(name)


# Configure on import
configure_logging()
