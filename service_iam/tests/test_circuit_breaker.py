"""
Unit tests for the circuit breaker.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.test_helpers import ManualClock


class DirectoryDown(ConnectionError):
    pass


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def listener(self):
        return MagicMock()

    @pytest.fixture
    def breaker(self, clock, listener):
        return CircuitBreaker(failure_threshold=5, success_threshold=3, recovery_timeout=5.0,
                              expected_exception=ConnectionError, name="ldap", clock=clock,
                              on_state_change=listener)

    async def _fail(self, breaker, times=1):
        failing = AsyncMock(side_effect=DirectoryDown("unreachable"))
        for _ in range(times):
            with pytest.raises(DirectoryDown):
                await breaker.call(failing)

    async def _succeed(self, breaker, times=1):
        for _ in range(times):
            assert await breaker.call(AsyncMock(return_value="ok")) == "ok"

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breaker):
        await self._fail(breaker, 4)
        assert breaker.state == CircuitBreakerState.CLOSED

        await self._fail(breaker)
        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await self._fail(breaker, 4)
        await self._succeed(breaker)
        await self._fail(breaker, 4)

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, breaker):
        await self._fail(breaker, 5)
        func = AsyncMock(return_value="ok")

        with pytest.raises(CircuitBreakerOpenException) as exc_info:
            await breaker.call(func)

        func.assert_not_called()
        assert exc_info.value.retry_after == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self, breaker, clock):
        await self._fail(breaker, 5)

        clock.advance(4.5)
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(AsyncMock(return_value="ok"))

        clock.advance(0.5)
        await self._succeed(breaker)
        assert breaker.state == CircuitBreakerState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self, breaker, clock, listener):
        await self._fail(breaker, 5)
        clock.advance(5)

        await self._succeed(breaker, 2)
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        await self._succeed(breaker)
        assert breaker.state == CircuitBreakerState.CLOSED

        transitions = [(c.args[1], c.args[2]) for c in listener.call_args_list]
        assert transitions == [
            (CircuitBreakerState.CLOSED, CircuitBreakerState.OPEN),
            (CircuitBreakerState.OPEN, CircuitBreakerState.HALF_OPEN),
            (CircuitBreakerState.HALF_OPEN, CircuitBreakerState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        await self._fail(breaker, 5)
        clock.advance(5)

        await self._succeed(breaker)
        await self._fail(breaker)
        assert breaker.state == CircuitBreakerState.OPEN

        # a fresh cool-down starts from the re-open
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(AsyncMock(return_value="ok"))

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_not_a_failure(self, breaker):
        rejected = AsyncMock(side_effect=ValueError("bad input"))
        for _ in range(10):
            with pytest.raises(ValueError):
                await breaker.call(rejected)

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_counts(self, breaker):
        release = asyncio.Event()

        async def slow_failure():
            await release.wait()
            raise DirectoryDown("dropped")

        await self._fail(breaker, 4)
        caller = asyncio.ensure_future(breaker.call(slow_failure))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert breaker.state == CircuitBreakerState.OPEN

    def test_get_state(self, breaker):
        state = breaker.get_state()

        assert state["name"] == "ldap"
        assert state["state"] == "closed"
        assert state["failure_threshold"] == 5
