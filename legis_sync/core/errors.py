"""
Error taxonomy for the ingestion pipeline.

Every failure the pipeline can surface is an IngestError subclass so the
orchestrator can classify it without string matching:

    RateLimitCancelled   caller's wait budget ran out before a token was free
    CircuitOpenError     breaker rejected the call without touching upstream
    CallTimeoutError     breaker per-call timeout expired (counts as failure)
    UpstreamStatusError  retryable HTTP status (5xx, 429)
    TerminalHTTPError    non-retryable HTTP status (other 4xx)
    RetriesExhausted     attempt budget spent, last cause chained
    DecodeError          2xx body did not match the expected envelope
    ConversionError      a single payload violated its entity schema
    PersistenceError     repository rejected a record or batch

Task cancellation is never wrapped: asyncio.CancelledError propagates as-is
so callers can tell "we were told to stop" apart from an upstream fault.

Usage:
    try:
        await client.list_page("votacao", page=1)
    except IngestError as exc:
        capture_exception(exc, context={"entity_type": "votacao"})
"""

from typing import Any, Dict, Optional
from datetime import datetime, timezone

import structlog

from legis_sync.core.context import get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "IngestError",
    "RateLimitCancelled",
    "CircuitOpenError",
    "CallTimeoutError",
    "UpstreamStatusError",
    "TerminalHTTPError",
    "RetriesExhausted",
    "DecodeError",
    "ConversionError",
    "PersistenceError",
    "is_transient",
    "find_circuit_open",
    "is_circuit_open",
    "capture_exception",
]


class IngestError(Exception):
    """Base class for every pipeline failure."""


class RateLimitCancelled(IngestError):
    def __init__(self, wait: float, budget: float):
        self.wait = wait
        self.budget = budget
        super().__init__(f"rate limit wait of {wait:.3f}s exceeds budget of {budget:.3f}s")


class CircuitOpenError(IngestError):
    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = max(retry_in, 0.0)
        super().__init__(f"circuit breaker '{name}' is open (next trial call in {self.retry_in:.1f}s)")


class CallTimeoutError(IngestError):
    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"call guarded by '{name}' exceeded {timeout:.1f}s")


class UpstreamStatusError(IngestError):
    """HTTP status the retry loop may try again (5xx, 429)."""

    def __init__(self, status_code: int, url: str, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.url = url
        self.retry_after = retry_after
        super().__init__(f"upstream returned status {status_code} for {url}")


class TerminalHTTPError(UpstreamStatusError):
    """HTTP outcome that must not be retried (4xx other than 429, redirect loops)."""

    def __init__(self, status_code: Optional[int], url: str, reason: Optional[str] = None):
        super().__init__(status_code, url)  # type: ignore[arg-type]
        self.reason = reason
        if reason:
            self.args = (f"{reason} for {url}",)


class RetriesExhausted(IngestError):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"all {attempts} attempts failed: {last_error}")


class DecodeError(IngestError):
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"could not decode response from {url}: {reason}")


class ConversionError(IngestError):
    def __init__(self, entity_type: str, reason: str):
        self.entity_type = entity_type
        self.reason = reason
        super().__init__(f"invalid {entity_type} payload: {reason}")


class PersistenceError(IngestError):
    pass


_TRANSIENT = (RateLimitCancelled, CircuitOpenError, CallTimeoutError, RetriesExhausted, TimeoutError)


def is_transient(exc: BaseException) -> bool:
    """True when the same unit of work is worth trying again later."""
    return isinstance(exc, _TRANSIENT)


def find_circuit_open(exc: Optional[BaseException]) -> Optional[CircuitOpenError]:
    """Return the CircuitOpenError in the exception's cause/context chain, if any."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, CircuitOpenError):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return None


def is_circuit_open(exc: Optional[BaseException]) -> bool:
    return find_circuit_open(exc) is not None


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
) -> None:
    """
    Log an exception with the current sync run context.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"entity_type": "votacao"})
        level: Log level (warning, error)
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }
    log = logger.warning if level == "warning" else logger.error
    # Expected pipeline failures don't need a traceback
    if isinstance(exc, IngestError):
        log("Exception captured", error=str(exc), **enriched_context)
    else:
        log("Exception captured", exc_info=exc, **enriched_context)
