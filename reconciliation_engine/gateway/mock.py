"""
Reconciliation Engine - Mock Exchange Gateway.

============================================================
PURPOSE
============================================================
In-memory gateway for tests and dry runs.

FEATURES:
- Scriptable order history, active orders, balances and prices
- Error injection per operation (queue of exceptions)
- Call counting for assertions

============================================================
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from ..clock import ClockProtocol, SystemClock
from ..types import (
    AccountBalances,
    ExchangeOrder,
    ExchangeOrderStatus,
    OrderKind,
    PlaceOrderRequest,
    PlaceOrderResult,
)
from .base import ExchangeGateway


logger = logging.getLogger(__name__)


@dataclass
class MockGatewayConfig:
    """Configuration for the mock gateway."""

    default_price: Decimal = Decimal("50000")
    """Price returned for symbols without an explicit price."""

    fill_market_orders: bool = True
    """Whether placed market orders appear as Filled in history."""

    balances: Dict[str, Decimal] = field(default_factory=dict)
    """Initial wallet balances."""


class MockExchangeGateway(ExchangeGateway):
    """
    Mock exchange gateway.

    Usage:
        gateway = MockExchangeGateway()
        gateway.add_order(order)
        gateway.fail_next("get_order_history", NetworkError("down"))
    """

    def __init__(
        self,
        config: Optional[MockGatewayConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or MockGatewayConfig()
        self._clock = clock or SystemClock()
        self._history: Dict[str, ExchangeOrder] = {}
        self._active: Dict[str, ExchangeOrder] = {}
        self._prices: Dict[str, Decimal] = {}
        self._balances: Dict[str, Decimal] = dict(self._config.balances)
        self._failures: Dict[str, List[Exception]] = {}
        self.calls: Dict[str, int] = {}
        self.placed: List[PlaceOrderRequest] = []

    @property
    def exchange_id(self) -> str:
        return "mock"

    # --------------------------------------------------------
    # SCRIPTING
    # --------------------------------------------------------

    def add_order(self, order: ExchangeOrder, active: Optional[bool] = None) -> None:
        """Add an order to history, and to active orders if it is open."""
        self._history[order.order_id] = order
        if active is None:
            active = order.status.is_open
        if active:
            self._active[order.order_id] = order
        else:
            self._active.pop(order.order_id, None)

    def set_active_view(self, order: ExchangeOrder) -> None:
        """Put an order in the active view only (history untouched)."""
        self._active[order.order_id] = order

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = price

    def set_balance(self, coin: str, amount: Decimal) -> None:
        self._balances[coin] = amount

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of an operation raise `error`."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def _enter(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    # --------------------------------------------------------
    # GATEWAY OPERATIONS
    # --------------------------------------------------------

    async def get_market_price(self, symbol: str) -> Decimal:
        self._enter("get_market_price")
        return self._prices.get(symbol, self._config.default_price)

    async def place_order(self, request: PlaceOrderRequest) -> PlaceOrderResult:
        self._enter("place_order")
        self.placed.append(request)

        order_id = str(uuid.uuid4())
        now: datetime = self._clock.now()
        price = request.price if request.price is not None else self._prices.get(
            request.symbol, self._config.default_price
        )
        filled = request.order_type == OrderKind.MARKET and self._config.fill_market_orders

        self.add_order(ExchangeOrder(
            order_id=order_id,
            symbol=request.symbol,
            side=request.side,
            status=ExchangeOrderStatus.FILLED if filled else ExchangeOrderStatus.NEW,
            quantity=request.quantity,
            price=price,
            executed_quantity=request.quantity if filled else Decimal("0"),
            average_price=price if filled else None,
            order_type=request.order_type,
            created_time=now,
            updated_time=now,
        ))
        logger.info(f"Mock order placed: {order_id} {request.side.value} {request.quantity} {request.symbol}")

        return PlaceOrderResult(
            order_id=order_id,
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            price=request.price,
        )

    async def get_order_history(self, limit: int = 200) -> List[ExchangeOrder]:
        self._enter("get_order_history")
        return list(self._history.values())[-limit:]

    async def get_active_orders(self) -> List[ExchangeOrder]:
        self._enter("get_active_orders")
        return list(self._active.values())

    async def get_account_balance(self) -> AccountBalances:
        self._enter("get_account_balance")
        return AccountBalances(balances=dict(self._balances))
