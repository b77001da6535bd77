"""
Resilience Tests.

============================================================
PURPOSE
============================================================
Retry policy, circuit breaker and the resilient gateway.

TEST CATEGORIES:
- Backoff delays per error category
- Retry loop (injected sleep, no real waits)
- Circuit breaker state machine (MockClock)
- ResilientGateway endpoint wiring

============================================================
"""

import asyncio
import random
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from reconciliation_engine.clock import MockClock
from reconciliation_engine.config import CircuitBreakerConfig, RetryConfig
from reconciliation_engine.errors import (
    AuthenticationError,
    CircuitOpenError,
    DataIntegrityError,
    ExchangeServerError,
    NetworkError,
    RateLimitError,
)
from reconciliation_engine.gateway.mock import MockExchangeGateway
from reconciliation_engine.gateway.resilient import ResilientGateway
from reconciliation_engine.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    RetryPolicy,
)
from reconciliation_engine.types import PlaceOrderRequest, TradeSide

from .factories import make_order


class _ZeroRandom(random.Random):
    """rng with no jitter."""

    def random(self):
        return 0.0


class _MaxRandom(random.Random):
    """rng with maximum jitter."""

    def random(self):
        return 1.0


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def policy(sleep):
    return RetryPolicy(RetryConfig(), sleep=sleep, rng=_ZeroRandom())


# ============================================================
# RETRY POLICY
# ============================================================

class TestRetryDelays:
    """Tests for RetryPolicy.compute_delay."""

    def test_base_delays_by_category(self, policy):
        assert policy.base_delay(RateLimitError("x")) == 5.0
        assert policy.base_delay(NetworkError("x")) == 2.0
        assert policy.base_delay(ExchangeServerError("x")) == 1.0

    def test_exponential_growth(self, policy):
        error = NetworkError("x")

        assert policy.compute_delay(error, 1) == 2.0
        assert policy.compute_delay(error, 2) == 4.0
        assert policy.compute_delay(error, 3) == 8.0

    def test_delay_capped(self, policy):
        assert policy.compute_delay(RateLimitError("x"), 5) == 30.0

    def test_jitter_at_most_ten_percent(self, sleep):
        policy = RetryPolicy(RetryConfig(), sleep=sleep, rng=_MaxRandom())

        assert policy.compute_delay(RateLimitError("x"), 1) == pytest.approx(5.5)


class TestRetryExecute:
    """Tests for RetryPolicy.execute."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, policy, sleep):
        operation = AsyncMock(return_value="ok")

        assert await policy.execute(operation) == "ok"
        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, policy, sleep):
        operation = AsyncMock(side_effect=[NetworkError("down"), RateLimitError("slow"), "ok"])

        assert await policy.execute(operation) == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 10.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, policy, sleep):
        operation = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError):
            await policy.execute(operation)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, policy, sleep):
        operation = AsyncMock(side_effect=AuthenticationError("bad key"))

        with pytest.raises(AuthenticationError):
            await policy.execute(operation)

        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_should_retry_narrows_retries(self, policy):
        operation = AsyncMock(side_effect=NetworkError("timeout"))

        with pytest.raises(NetworkError):
            await policy.execute(operation, should_retry=lambda e: isinstance(e, RateLimitError))

        assert operation.await_count == 1


# ============================================================
# CIRCUIT BREAKER
# ============================================================

class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def _breaker(self, clock):
        return CircuitBreaker(
            "order_history",
            CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=30),
            clock,
        )

    def test_opens_after_threshold(self):
        breaker = self._breaker(MockClock())

        for _ in range(4):
            breaker.record_failure(NetworkError("x"))
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure(NetworkError("x"))
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_terminal_errors_do_not_count(self):
        breaker = self._breaker(MockClock())

        for _ in range(10):
            breaker.record_failure(AuthenticationError("x"))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_success_resets_count(self):
        breaker = self._breaker(MockClock())

        for _ in range(4):
            breaker.record_failure(NetworkError("x"))
        breaker.record_success()
        breaker.record_failure(NetworkError("x"))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    def test_half_open_after_cooldown_admits_one_probe(self):
        clock = MockClock()
        breaker = self._breaker(clock)
        for _ in range(5):
            breaker.record_failure(NetworkError("x"))

        clock.advance(29)
        assert breaker.state == CircuitState.OPEN

        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_probe_success_closes(self):
        clock = MockClock()
        breaker = self._breaker(clock)
        for _ in range(5):
            breaker.record_failure(NetworkError("x"))
        clock.advance(30)

        breaker.before_call()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED

    def test_probe_failure_reopens(self):
        clock = MockClock()
        breaker = self._breaker(clock)
        for _ in range(5):
            breaker.record_failure(NetworkError("x"))
        clock.advance(30)

        breaker.before_call()
        breaker.record_failure(NetworkError("x"))

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_call_records_outcome(self):
        breaker = self._breaker(MockClock())

        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("x")))
        assert breaker.consecutive_failures == 1

        assert await breaker.call(AsyncMock(return_value=1)) == 1
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_malformed_probe_response_reopens(self):
        clock = MockClock()
        breaker = self._breaker(clock)
        for _ in range(5):
            breaker.record_failure(NetworkError("x"))
        clock.advance(30)

        with pytest.raises(DataIntegrityError):
            await breaker.call(AsyncMock(side_effect=DataIntegrityError("bad price")))
        assert breaker.state == CircuitState.OPEN

        clock.advance(30)
        assert await breaker.call(AsyncMock(return_value=1)) == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_releases_slot(self):
        clock = MockClock()
        breaker = self._breaker(clock)
        for _ in range(5):
            breaker.record_failure(NetworkError("x"))
        clock.advance(30)

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(AsyncMock(side_effect=asyncio.CancelledError()))
        assert breaker.state == CircuitState.HALF_OPEN

        assert await breaker.call(AsyncMock(return_value=1)) == 1
        assert breaker.state == CircuitState.CLOSED

    def test_registry_one_breaker_per_endpoint(self):
        registry = CircuitBreakerRegistry(clock=MockClock())

        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert registry.states() == {"a": "CLOSED", "b": "CLOSED"}


# ============================================================
# RESILIENT GATEWAY
# ============================================================

class TestResilientGateway:
    """Tests for ResilientGateway."""

    def _gateway(self, inner, sleep, clock=None):
        return ResilientGateway(
            inner,
            RetryPolicy(RetryConfig(), sleep=sleep, rng=_ZeroRandom()),
            CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2), clock or MockClock()),
        )

    @pytest.mark.asyncio
    async def test_reads_are_retried(self, sleep):
        inner = MockExchangeGateway()
        inner.add_order(make_order("X1"))
        inner.fail_next("get_order_history", NetworkError("down"), times=2)

        orders = await self._gateway(inner, sleep).get_order_history()

        assert [o.order_id for o in orders] == ["X1"]
        assert inner.calls["get_order_history"] == 3

    @pytest.mark.asyncio
    async def test_place_order_not_retried_on_network_error(self, sleep):
        inner = MockExchangeGateway()
        inner.fail_next("place_order", NetworkError("timeout"))
        request = PlaceOrderRequest("BTCUSDT", TradeSide.BUY, Decimal("0.01"), price=Decimal("50000"))

        with pytest.raises(NetworkError):
            await self._gateway(inner, sleep).place_order(request)

        assert inner.calls["place_order"] == 1

    @pytest.mark.asyncio
    async def test_place_order_retried_on_rate_limit(self, sleep):
        inner = MockExchangeGateway()
        inner.fail_next("place_order", RateLimitError("slow"))
        request = PlaceOrderRequest("BTCUSDT", TradeSide.BUY, Decimal("0.01"), price=Decimal("50000"))

        result = await self._gateway(inner, sleep).place_order(request)

        assert result.symbol == "BTCUSDT"
        assert inner.calls["place_order"] == 2

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, sleep):
        inner = MockExchangeGateway()
        inner.fail_next("get_active_orders", NetworkError("down"), times=3)
        gateway = self._gateway(inner, sleep)

        with pytest.raises(CircuitOpenError):
            await gateway.get_active_orders()

        # Two real failures opened the breaker; the third attempt never reached the exchange
        assert inner.calls["get_active_orders"] == 2
        assert gateway.breakers.get("active_orders").state == CircuitState.OPEN
        assert gateway.breakers.get("order_history").state == CircuitState.CLOSED
