"""
Tests for the token bucket rate limiter.

Tests cover:
- Initialization and validation
- Burst capacity and lazy refill
- Blocking acquire timing
- Wait budget (RateLimitCancelled) and task cancellation
- Concurrent acquirers
"""

import asyncio
import time

import pytest

from legis_sync.core.errors import RateLimitCancelled
from legis_sync.core.rate_limit import RateLimiter


class TestRateLimiterInitialization:
    """Tests for RateLimiter initialization."""

    def test_starts_full(self, clock):
        limiter = RateLimiter(rate=5, capacity=10, clock=clock)
        assert limiter.tokens == 10

    @pytest.mark.parametrize("rate,capacity", [(0, 1), (-1, 1), (1, 0)])
    def test_rejects_invalid_parameters(self, rate, capacity):
        with pytest.raises(ValueError):
            RateLimiter(rate=rate, capacity=capacity)


class TestTokenAccounting:
    """Tests for burst and refill arithmetic (fake clock)."""

    def test_exactly_capacity_calls_succeed_immediately(self, clock):
        limiter = RateLimiter(rate=2, capacity=4, clock=clock)

        assert [limiter.try_acquire() for _ in range(4)] == [True] * 4
        assert limiter.try_acquire() is False

    def test_refill_is_continuous(self, clock):
        limiter = RateLimiter(rate=2, capacity=4, clock=clock)
        for _ in range(4):
            limiter.try_acquire()

        clock.advance(0.25)
        assert limiter.tokens == pytest.approx(0.5)
        assert limiter.try_acquire() is False

        clock.advance(0.25)
        assert limiter.try_acquire() is True

    def test_tokens_never_exceed_capacity(self, clock):
        limiter = RateLimiter(rate=100, capacity=3, clock=clock)
        limiter.try_acquire()

        clock.advance(3600)
        assert limiter.tokens == 3

    def test_tokens_never_negative(self, clock):
        limiter = RateLimiter(rate=1, capacity=1, clock=clock)
        for _ in range(5):
            limiter.try_acquire()
        assert limiter.tokens >= 0

    def test_wait_time_for_next_token(self, clock):
        limiter = RateLimiter(rate=4, capacity=1, clock=clock)
        assert limiter._reserve_or_wait_time() == 0.0
        assert limiter._reserve_or_wait_time() == pytest.approx(0.25)

        clock.advance(0.1)
        assert limiter._reserve_or_wait_time() == pytest.approx(0.15)


class TestAcquire:
    """Tests for the async acquire path (real clock)."""

    @pytest.mark.asyncio
    async def test_capacity_plus_one_blocks_for_refill_interval(self):
        rate, capacity = 20.0, 3
        limiter = RateLimiter(rate=rate, capacity=capacity)

        start = time.monotonic()
        for _ in range(capacity):
            await limiter.acquire()
        assert time.monotonic() - start < 0.04

        await limiter.acquire()
        # Allow a little scheduler slack below 1/rate
        assert time.monotonic() - start >= (1 / rate) * 0.9

    @pytest.mark.asyncio
    async def test_budget_too_small_raises_without_waiting(self):
        limiter = RateLimiter(rate=1, capacity=1)
        await limiter.acquire()

        start = time.monotonic()
        with pytest.raises(RateLimitCancelled) as exc_info:
            await limiter.acquire(timeout=0.05)

        assert time.monotonic() - start < 0.05
        assert exc_info.value.wait > exc_info.value.budget

    @pytest.mark.asyncio
    async def test_budget_large_enough_waits(self):
        limiter = RateLimiter(rate=50, capacity=1)
        await limiter.acquire()
        await limiter.acquire(timeout=1.0)

    @pytest.mark.asyncio
    async def test_cancellation_aborts_wait(self):
        limiter = RateLimiter(rate=0.1, capacity=1)
        await limiter.acquire()

        task = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_consume_token(self):
        limiter = RateLimiter(rate=20, capacity=1)
        await limiter.acquire()

        task = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.06)
        assert limiter.try_acquire() is True

    @pytest.mark.asyncio
    async def test_concurrent_acquirers_are_all_served(self):
        rate = 50.0
        limiter = RateLimiter(rate=rate, capacity=1)

        start = time.monotonic()
        await asyncio.gather(*(limiter.acquire() for _ in range(5)))
        elapsed = time.monotonic() - start

        # 1 burst token, then 4 refills
        assert elapsed >= (4 / rate) * 0.9
