"""Database utilities for handling transient connection failures.

Long backfills keep a connection pool busy for hours; managed PostgreSQL
can drop connections mid-run (idle reaping, failover, scale-down). The
upsert path retries those drops instead of failing the whole batch.
"""

import functools
import logging
import time
from typing import TypeVar, Callable, Any, ParamSpec
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    OperationalError,
    DisconnectionError,
    InterfaceError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

# Errors that indicate a transient connection failure (worth retrying)
TRANSIENT_ERRORS = (
    "server closed the connection unexpectedly",
    "connection refused",
    "connection reset by peer",
    "ssl connection has been closed unexpectedly",
    "terminating connection due to administrator command",
    "connection timed out",
    "could not connect to server",
    "the database system is starting up",
    "the database system is shutting down",
    "database is locked",
)


def is_transient_error(error: Exception) -> bool:
    """Check if an error is a transient connection failure."""
    error_msg = str(error).lower()
    return any(msg in error_msg for msg in TRANSIENT_ERRORS)


def db_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator that retries a database operation on transient connection failures.

    Non-transient errors (constraint violations, bad SQL) are raised on the
    first occurrence.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds), doubled each attempt
        max_delay: Maximum delay between retries (seconds)
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        func_name = getattr(func, "__name__", "unknown")

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)  # type: ignore[arg-type]
                except (OperationalError, DisconnectionError, InterfaceError) as e:
                    if not is_transient_error(e) or attempt >= max_retries:
                        raise

                    delay = min(base_delay * 2**attempt, max_delay)
                    logger.warning(
                        f"[DB Retry] {func_name} failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    time.sleep(delay)
            raise RuntimeError("Unexpected state in db_retry")

        return wrapper  # type: ignore[return-value]

    return decorator


def check_db_connection(engine: Engine) -> bool:
    """
    Check if database connection is healthy.
    Returns True if connection is good, False otherwise.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"[DB Health] Connection check failed: {e}")
        return False
