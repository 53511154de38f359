"""
Resilient HTTP client for the Câmara API.

Every request goes through the same stack, outermost first:

    rate limiter  ->  circuit breaker (+ per-call timeout)  ->  retry loop  ->  HTTP

A rate limiter refusal never touches the breaker. The breaker sees one
outcome per logical call: a retry loop that burns its whole attempt budget
is recorded as a single failure, not one per attempt. Non-retryable 4xx
answers and undecodable bodies mean the upstream is up, so they pass through
the breaker as successes and propagate to the caller unchanged.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

import httpx

from legis_sync.client.camara import MAX_PAGE_SIZE, extract_dados, get_endpoint
from legis_sync.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerPool,
    StateChangeCallback,
)
from legis_sync.core.config import Settings, settings
from legis_sync.core.errors import (
    DecodeError,
    RetriesExhausted,
    TerminalHTTPError,
    UpstreamStatusError,
)
from legis_sync.core.logging_config import get_logger
from legis_sync.core.rate_limit import RateLimiter

logger = get_logger(__name__)

Record = Dict[str, Any]


class DataSource(Protocol):
    """Paginated read access to the upstream, by entity type."""

    async def list_page(
        self,
        entity_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 1,
        page_size: int = MAX_PAGE_SIZE,
    ) -> List[Record]: ...

    async def get_by_id(self, entity_type: str, record_id: Any) -> Record: ...

    async def list_by_window(
        self,
        entity_type: str,
        start: date,
        end: date,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 1,
        page_size: int = MAX_PAGE_SIZE,
    ) -> List[Record]: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.2  # doubled after every failed attempt
    max_delay: float = 10.0
    jitter: bool = True
    respect_retry_after: bool = True  # honor Retry-After on 429, capped at max_delay

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Backoff to sleep after the given failed attempt (1-indexed)."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if self.jitter and delay > 0:
            delay = min(delay + random.uniform(0, delay / 2), self.max_delay)
        if self.respect_retry_after and retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay))
        return delay


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ResilientClient:
    """
    Data source for the Câmara API with rate limiting, circuit breaking and
    bounded retry.

    One instance owns its limiter, its breakers and its connection pool; share
    the instance (not globals) between every task that talks to the API.

    Usage:
        async with ResilientClient.from_settings() as client:
            deputados = await client.list_page("deputado", page=1)
    """

    def __init__(
        self,
        base_url: str,
        limiter: RateLimiter,
        breakers: CircuitBreakerPool,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        user_agent: str = "legis-sync/1.0",
        rate_limit_wait: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter
        self.breakers = breakers
        self.retry = retry or RetryPolicy()
        self.rate_limit_wait = rate_limit_wait
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_state_change: Optional[StateChangeCallback] = None,
    ) -> "ResilientClient":
        breaker_config = CircuitBreakerConfig(
            max_failures=config.BREAKER_MAX_FAILURES,
            reset_timeout=config.BREAKER_RESET_TIMEOUT,
            success_threshold=config.BREAKER_SUCCESS_THRESHOLD,
            call_timeout=config.BREAKER_CALL_TIMEOUT,
        )
        return cls(
            base_url=config.CAMARA_BASE_URL,
            limiter=RateLimiter(config.REQUESTS_PER_SECOND, config.RATE_LIMIT_BURST),
            breakers=cls.build_breakers(breaker_config, config.BREAKER_SCOPE, on_state_change),
            retry=RetryPolicy(
                max_attempts=config.MAX_RETRY_ATTEMPTS,
                base_delay=config.RETRY_BASE_DELAY,
                max_delay=config.RETRY_MAX_DELAY,
                jitter=config.RETRY_JITTER,
            ),
            timeout=config.HTTP_TIMEOUT,
            user_agent=config.USER_AGENT,
            rate_limit_wait=config.RATE_LIMIT_WAIT_TIMEOUT,
            transport=transport,
        )

    @staticmethod
    def build_breakers(
        config: CircuitBreakerConfig,
        scope: str = "client",
        on_state_change: Optional[StateChangeCallback] = None,
    ) -> CircuitBreakerPool:
        """Breaker pool that treats terminal 4xx and decode errors as healthy answers."""
        return CircuitBreakerPool(
            prefix="camara",
            config=config,
            scope=scope,
            excluded=(TerminalHTTPError, DecodeError),
            on_state_change=on_state_change,
        )

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def breaker_for(self, entity_type: str) -> CircuitBreaker:
        return self.breakers.get(entity_type)

    def breaker_states(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every breaker this client has used."""
        return self.breakers.snapshots()

    async def fetch(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        entity_type: str = CircuitBreakerPool.SHARED_KEY,
    ) -> Any:
        """
        Perform one logical GET and return the decoded JSON body.

        Raises:
            RateLimitCancelled: no token within the wait budget (breaker untouched)
            CircuitOpenError: breaker open, no HTTP call made
            CallTimeoutError: the whole call, retries included, exceeded the breaker timeout
            RetriesExhausted: every attempt hit a transport error, 5xx or 429
            TerminalHTTPError: non-retryable 4xx or a redirect loop, not retried
            DecodeError: 2xx body could not be content-decoded or was not valid JSON, not retried
        """
        await self.limiter.acquire(timeout=self.rate_limit_wait)
        breaker = self.breakers.get(entity_type)
        return await breaker.call(lambda: self._get_with_retry(path, dict(params or {})))

    async def _get_with_retry(self, path: str, params: Dict[str, Any]) -> Any:
        attempts = self.retry.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            retry_after = None
            try:
                response = await self._http.get(path, params=params)
            except httpx.TransportError as e:
                last_error = e
            except httpx.DecodingError as e:
                # Upstream answered but the body could not be content-decoded
                raise DecodeError(f"{self.base_url}{path}", str(e)) from e
            except httpx.TooManyRedirects as e:
                raise TerminalHTTPError(None, f"{self.base_url}{path}", reason="too many redirects") from e
            else:
                if response.is_success:
                    return self._decode(response)
                if not _is_retryable_status(response.status_code):
                    raise TerminalHTTPError(response.status_code, str(response.url))
                if response.status_code == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                last_error = UpstreamStatusError(response.status_code, str(response.url), retry_after)

            if attempt < attempts:
                delay = self.retry.delay_for(attempt, retry_after)
                logger.warning(
                    "request failed, retrying",
                    path=path,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=round(delay, 3),
                    error=str(last_error),
                )
                await self._sleep(delay)

        logger.error("request failed after all attempts", path=path, attempts=attempts, error=str(last_error))
        raise RetriesExhausted(attempts, last_error) from last_error

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(str(response.url), str(e)) from e

    async def list_page(
        self,
        entity_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 1,
        page_size: int = MAX_PAGE_SIZE,
    ) -> List[Record]:
        """One page of a list endpoint. An empty list means past the last page."""
        path, params = get_endpoint(entity_type).list_request(filters)
        params.update(pagina=page, itens=min(page_size, MAX_PAGE_SIZE))
        payload = await self.fetch(path, params, entity_type=entity_type)
        return extract_dados(payload, path, list)

    async def get_by_id(self, entity_type: str, record_id: Any) -> Record:
        path = get_endpoint(entity_type).detail_request(record_id)
        payload = await self.fetch(path, entity_type=entity_type)
        return extract_dados(payload, path, dict)

    async def list_by_window(
        self,
        entity_type: str,
        start: date,
        end: date,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 1,
        page_size: int = MAX_PAGE_SIZE,
    ) -> List[Record]:
        """One page of records whose date falls in [start, end]."""
        endpoint = get_endpoint(entity_type)
        if endpoint.window_params is None:
            raise ValueError(f"{entity_type} cannot be listed by date window")
        if start > end:
            raise ValueError(f"window start {start} is after end {end}")
        start_param, end_param = endpoint.window_params
        window_filters = {**(filters or {}), start_param: start.isoformat(), end_param: end.isoformat()}
        return await self.list_page(entity_type, window_filters, page=page, page_size=page_size)
