"""
Reconciliation Engine - Resilient Gateway.

Decorates any ExchangeGateway with the retry policy and one circuit
breaker per logical endpoint. Every attempt passes through the breaker.

Order placement is only retried on rate-limit errors: a timed-out
create may have reached the exchange.
"""

import logging
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, TypeVar

from ..errors import GatewayError, RateLimitError
from ..resilience import CircuitBreakerRegistry, RetryPolicy
from ..types import AccountBalances, ExchangeOrder, PlaceOrderRequest, PlaceOrderResult
from .base import ExchangeGateway


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _only_rate_limits(error: GatewayError) -> bool:
    return isinstance(error, RateLimitError)


class ResilientGateway(ExchangeGateway):
    """Retrying, circuit-broken view of another gateway."""

    def __init__(
        self,
        inner: ExchangeGateway,
        retry_policy: Optional[RetryPolicy] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ):
        self._inner = inner
        self._retry = retry_policy or RetryPolicy()
        self._breakers = breakers or CircuitBreakerRegistry()

    @property
    def exchange_id(self) -> str:
        return self._inner.exchange_id

    @property
    def inner(self) -> ExchangeGateway:
        return self._inner

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    async def connect(self) -> None:
        await self._inner.connect()

    async def disconnect(self) -> None:
        await self._inner.disconnect()

    async def _call(
        self,
        endpoint: str,
        operation: Callable[[], Awaitable[T]],
        should_retry: Optional[Callable[[GatewayError], bool]] = None,
    ) -> T:
        breaker = self._breakers.get(endpoint)
        return await self._retry.execute(
            lambda: breaker.call(operation),
            name=f"{self.exchange_id}.{endpoint}",
            should_retry=should_retry,
        )

    async def get_market_price(self, symbol: str) -> Decimal:
        return await self._call("market_price", lambda: self._inner.get_market_price(symbol))

    async def place_order(self, request: PlaceOrderRequest) -> PlaceOrderResult:
        return await self._call(
            "place_order",
            lambda: self._inner.place_order(request),
            should_retry=_only_rate_limits,
        )

    async def get_order_history(self, limit: int = 200) -> List[ExchangeOrder]:
        return await self._call("order_history", lambda: self._inner.get_order_history(limit))

    async def get_active_orders(self) -> List[ExchangeOrder]:
        return await self._call("active_orders", lambda: self._inner.get_active_orders())

    async def get_account_balance(self) -> AccountBalances:
        return await self._call("account_balance", lambda: self._inner.get_account_balance())
