"""
Sync run context management.

Correlates every log line and error report emitted during one sync run
(backfill or incremental) through a run_id. Uses contextvars so concurrent
runs in the same event loop never see each other's context.

Usage:
    with sync_context(mode="backfill") as run_id:
        logger.info("starting")  # carries run_id and mode automatically
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
import uuid

import structlog

__all__ = [
    "generate_run_id",
    "get_run_id",
    "get_sync_mode",
    "sync_context",
    "get_context_dict",
]

_run_id: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
_sync_mode: ContextVar[Optional[str]] = ContextVar("sync_mode", default=None)


def generate_run_id() -> str:
    """
    Generate a new run ID.

    Format: run_{16 hex chars}
    """
    return f"run_{uuid.uuid4().hex[:16]}"


def get_run_id() -> Optional[str]:
    """Get the run ID of the current context."""
    return _run_id.get()


def get_sync_mode() -> Optional[str]:
    """Get the sync mode ("backfill", "incremental") of the current context."""
    return _sync_mode.get()


@contextmanager
def sync_context(mode: str, run_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind run_id and mode for the duration of a sync run.

    Both values are also bound into structlog's contextvars so every log
    line emitted inside the block carries them. Previous values are
    restored on exit, which keeps nested or sequential runs isolated.
    """
    run_id = run_id or generate_run_id()
    run_token = _run_id.set(run_id)
    mode_token = _sync_mode.set(mode)
    bound = structlog.contextvars.bind_contextvars(run_id=run_id, mode=mode)
    try:
        yield run_id
    finally:
        structlog.contextvars.reset_contextvars(**bound)
        _sync_mode.reset(mode_token)
        _run_id.reset(run_token)


def get_context_dict() -> dict:
    """
    Get all context variables as dict.

    Useful for enriching error reports.
    """
    return {
        "run_id": get_run_id(),
        "mode": get_sync_mode(),
    }
