import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from legis_sync.core.errors import CallTimeoutError, CircuitOpenError
from legis_sync.core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# (name, old_state, new_state) - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    max_failures: int = 8
    reset_timeout: float = 120.0  # seconds in OPEN before a trial call is allowed
    success_threshold: int = 3  # successes in HALF_OPEN needed to close
    call_timeout: float = 90.0  # per guarded call

    def __post_init__(self):
        if self.max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must not be negative")
        if self.call_timeout <= 0:
            raise ValueError("call_timeout must be greater than zero")


@dataclass
class CircuitBreaker:
    """
    Guards calls to an unhealthy upstream.

    CLOSED counts consecutive failures and opens at config.max_failures.
    OPEN rejects calls with CircuitOpenError until reset_timeout has passed;
    the first call after that moves to HALF_OPEN and is let through.
    HALF_OPEN closes after success_threshold successes and reopens on any
    failure. The breaker never retries; retry is the caller's concern.

    Exceptions listed in `excluded` mean "upstream answered, the request was
    wrong" and are recorded as successes.
    """

    name: str
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    excluded: Tuple[Type[BaseException], ...] = ()
    on_state_change: Optional[StateChangeCallback] = None
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _next_retry: float | None = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    @property
    def state(self) -> CircuitState:
        """Return current state. Use allow_request() for state transitions."""
        with self._lock:
            return self._state

    def _transition(self, new_state: CircuitState) -> Tuple[str, str]:
        """Must be called while holding self._lock."""
        old_state = self._state
        self._state = new_state
        return old_state.value, new_state.value

    def _open(self) -> Tuple[str, str]:
        """Must be called while holding self._lock."""
        self._next_retry = self.clock() + self.config.reset_timeout
        self._success_count = 0
        return self._transition(CircuitState.OPEN)

    def _notify(self, change: Optional[Tuple[str, str]]) -> None:
        """Log and report a transition. Called outside the lock."""
        if change is None:
            return
        old_state, new_state = change
        log = logger.warning if new_state == CircuitState.OPEN.value else logger.info
        log("circuit state changed", breaker=self.name, old_state=old_state, new_state=new_state)
        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_state, new_state)
            except Exception as e:
                logger.error("circuit breaker state callback failed", breaker=self.name, error=str(e))

    def allow_request(self) -> bool:
        change = None
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._next_retry is not None and self.clock() >= self._next_retry:
                    self._success_count = 0
                    change = self._transition(CircuitState.HALF_OPEN)
                    result = True
                else:
                    result = False
            else:  # CLOSED or HALF_OPEN
                result = True
        self._notify(change)
        return result

    def record_success(self) -> None:
        change = None
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._failure_count = 0
                    self._success_count = 0
                    change = self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0
        self._notify(change)

    def record_failure(self) -> None:
        change = None
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                change = self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.max_failures:
                change = self._open()
        self._notify(change)

    def retry_in(self) -> float:
        """Seconds until an OPEN breaker allows its next trial call (0 otherwise)."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._next_retry is None:
                return 0.0
            return max(self._next_retry - self.clock(), 0.0)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` under the breaker and the per-call timeout.

        Raises:
            CircuitOpenError: breaker is open, operation was not invoked
            CallTimeoutError: operation exceeded config.call_timeout
            asyncio.CancelledError: caller cancelled; not recorded as a failure
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, self.retry_in())

        timeout_scope = asyncio.timeout(self.config.call_timeout)
        try:
            async with timeout_scope:
                result = await operation()
        except asyncio.CancelledError:
            raise
        except TimeoutError as e:
            self.record_failure()
            if timeout_scope.expired():
                raise CallTimeoutError(self.name, self.config.call_timeout) from e
            raise
        except self.excluded:
            self.record_success()
            raise
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        """Counters and config for health reporting."""
        retry_in = self.retry_in()
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failure_count,
                "successes": self._success_count,
                "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "retry_in": retry_in,
                "max_failures": self.config.max_failures,
                "reset_timeout": self.config.reset_timeout,
                "success_threshold": self.config.success_threshold,
                "call_timeout": self.config.call_timeout,
            }


class CircuitBreakerPool:
    """
    Owns the breakers of one client.

    With scope "client" every key shares a single breaker, so an unhealthy
    upstream trips for all entity types at once. With scope "entity" each key
    (entity type) gets its own breaker, created on first use.
    """

    SHARED_KEY = "default"

    def __init__(
        self,
        prefix: str,
        config: CircuitBreakerConfig,
        scope: str = "client",
        excluded: Tuple[Type[BaseException], ...] = (),
        on_state_change: Optional[StateChangeCallback] = None,
    ):
        if scope not in ("client", "entity"):
            raise ValueError(f"unknown breaker scope {scope!r}")
        self.prefix = prefix
        self.config = config
        self.scope = scope
        self.excluded = excluded
        self.on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, key: str) -> CircuitBreaker:
        if self.scope == "client":
            key = self.SHARED_KEY
        with self._lock:
            if key not in self._breakers:
                self._breakers[key] = CircuitBreaker(
                    name=f"{self.prefix}:{key}",
                    config=self.config,
                    excluded=self.excluded,
                    on_state_change=self.on_state_change,
                )
            return self._breakers[key]

    def get_all_states(self) -> Dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {cb.name: cb.state.value for cb in breakers}

    def snapshots(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {cb.name: cb.snapshot() for cb in breakers}
