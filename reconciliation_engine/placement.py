"""
Reconciliation Engine - Order Placement.

============================================================
PURPOSE
============================================================
Places an order, records it as pending, then runs an awaited
follow-up reconciliation so the ledger picks up the fill.

FLOW:
1. Resolve price (market price when none given)
2. Place order through the gateway (terminal errors propagate)
3. Insert a pending record carrying the exchange order id
4. Wait `follow_up_delay_seconds`, then reconcile

A failing follow-up is logged and returned, never raised: the
order itself was placed and recorded.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from .config import ReconciliationConfig
from .errors import ReconciliationEngineError
from .event_log import EventLogger, EventType
from .gateway.base import ExchangeGateway
from .ledger.store import LedgerStore
from .orchestrator import ReconciliationOrchestrator, ReconciliationSummary
from .types import (
    OrderKind,
    PlaceOrderRequest,
    PlaceOrderResult,
    TradeRecord,
    TradeSide,
    TradeStatus,
)


logger = logging.getLogger(__name__)

FOLLOW_UP_LOOKBACK = timedelta(hours=1)


@dataclass
class PlacementResult:
    """Outcome of place_and_record."""

    order: PlaceOrderResult
    record: Optional[TradeRecord]
    """Inserted ledger record; None if a reconciliation pass recorded it first."""

    follow_up: Optional[ReconciliationSummary] = None
    follow_up_error: Optional[str] = None


class OrderPlacementService:
    """
    Order placement with ledger bookkeeping.

    Usage:
        service = OrderPlacementService(gateway, store, events, orchestrator)
        result = await service.place_and_record("BTCUSDT", TradeSide.BUY, Decimal("0.01"))
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: LedgerStore,
        events: EventLogger,
        orchestrator: ReconciliationOrchestrator,
        config: Optional[ReconciliationConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._gateway = gateway
        self._store = store
        self._events = events
        self._orchestrator = orchestrator
        self._config = config or ReconciliationConfig()
        self._sleep = sleep or asyncio.sleep

    async def place_and_record(
        self,
        symbol: str,
        side: TradeSide,
        quantity: Decimal,
        price: Optional[Decimal] = None,
        order_type: OrderKind = OrderKind.LIMIT,
    ) -> PlacementResult:
        """
        Place an order and record it.

        Raises:
            GatewayError: price lookup or placement failed
            LedgerError: the pending record could not be written
        """
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")

        if price is None:
            price = await self._gateway.get_market_price(symbol)
            logger.info(f"Using market price {price} for {symbol}")

        placed = await self._gateway.place_order(PlaceOrderRequest(
            symbol=symbol,
            side=side,
            quantity=quantity,
            order_type=order_type,
            price=price,
        ))

        record = await self._store.insert_trade(TradeRecord(
            user_id=self._orchestrator.user_id,
            symbol=symbol,
            side=side,
            quantity=placed.quantity,
            price=placed.price if placed.price is not None else price,
            status=TradeStatus.PENDING,
            order_type=order_type,
            external_order_id=placed.order_id,
        ))
        if record is None:
            logger.info(f"Order {placed.order_id} already recorded by a reconciliation pass")

        await self._events.log(
            EventType.ORDER_PLACED,
            f"Placed {side.value} {order_type.value} order {placed.order_id} for {placed.quantity} {symbol}",
            {
                "order_id": placed.order_id,
                "symbol": symbol,
                "side": side.value,
                "quantity": placed.quantity,
                "price": placed.price if placed.price is not None else price,
                "trade_id": record.id if record else None,
            },
        )

        result = PlacementResult(order=placed, record=record)

        if self._config.follow_up_delay_seconds > 0:
            await self._sleep(self._config.follow_up_delay_seconds)
        try:
            result.follow_up = await self._orchestrator.run_reconciliation(FOLLOW_UP_LOOKBACK)
        except ReconciliationEngineError as e:
            result.follow_up_error = str(e)
            logger.error(f"Follow-up reconciliation after order {placed.order_id} failed: {e}")

        return result
