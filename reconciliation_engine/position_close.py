"""
Reconciliation Engine - Position-Close Detector.

============================================================
PURPOSE
============================================================
Finds filled buy positions that have been closed on the exchange
and records them as closed with realized P&L.

STRATEGIES (in order):
1. Sell match: a filled sell of the same symbol, quantity within 5%
   (inclusive), executed after the buy was created.
   P&L = (sell price - buy entry price) * sell executed quantity
2. Zero balance: the wallet holds no base asset (<= 1e-5).
   P&L = 0

SAFETY:
- Only `filled` buys are considered
- Every close is `... where status = 'filled'`, so a record closed
  by another writer is never closed twice
- Each sell closes at most one buy, across passes: the closing sell
  id is stored on the buy and never matched again

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Set, Tuple

from .config import ReconciliationConfig, ToleranceConfig
from .errors import GatewayError, LedgerError
from .event_log import EventLogger, EventType
from .gateway.base import ExchangeGateway
from .ledger.store import LedgerStore
from .matcher import pick_closest
from .state_machine import TransitionGuard
from .types import (
    ExchangeOrder,
    TradeRecord,
    TradeSide,
    TradeStatus,
    TradeUpdate,
)


logger = logging.getLogger(__name__)


DEFAULT_QUOTE_ASSETS: Tuple[str, ...] = ReconciliationConfig().quote_assets


def base_asset(symbol: str, quote_assets: Sequence[str] = DEFAULT_QUOTE_ASSETS) -> Optional[str]:
    """
    Strip the quote currency from a symbol.

    The longest matching suffix wins, so BTCFDUSD -> BTC, not BTCFD.
    Returns None when no known quote suffix applies.
    """
    for quote in sorted(quote_assets, key=len, reverse=True):
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)]
    return None


def realized_pnl(buy: TradeRecord, sell: ExchangeOrder) -> Decimal:
    """(sell price - buy entry price) * sell executed quantity."""
    quantity = sell.executed_quantity if sell.executed_quantity > 0 else sell.quantity
    return (sell.executed_price - buy.entry_price) * quantity


@dataclass
class PositionCloseResult:
    """Outcome of one detector pass."""

    closed_by_sell: int = 0
    closed_by_balance: int = 0
    conflicts: int = 0
    errors: int = 0
    balance_checked: bool = False

    @property
    def total_closed(self) -> int:
        return self.closed_by_sell + self.closed_by_balance


class PositionCloseDetector:
    """
    Detects closed positions for one user.

    Usage:
        detector = PositionCloseDetector(gateway, store, events, user_id="u1")
        result = await detector.detect(exchange_orders=history)
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: LedgerStore,
        events: EventLogger,
        user_id: str,
        tolerance: Optional[ToleranceConfig] = None,
        quote_assets: Sequence[str] = DEFAULT_QUOTE_ASSETS,
        history_limit: int = 200,
    ):
        self._gateway = gateway
        self._store = store
        self._events = events
        self._user_id = user_id
        self._tolerance = tolerance or ToleranceConfig()
        self._quote_assets = tuple(quote_assets)
        self._history_limit = history_limit

    async def detect(
        self,
        exchange_orders: Optional[Sequence[ExchangeOrder]] = None,
    ) -> PositionCloseResult:
        """
        Run both strategies.

        Args:
            exchange_orders: Orders already fetched by the caller; fetched
                from order history when omitted

        Raises:
            GatewayError: if order history had to be fetched and failed
        """
        result = PositionCloseResult()

        if exchange_orders is None:
            exchange_orders = await self._gateway.get_order_history(self._history_limit)

        await self.close_by_sell_orders(exchange_orders, result)
        await self.close_by_zero_balance(result)

        logger.info(
            f"Position-close detection complete: {result.closed_by_sell} by sell, "
            f"{result.closed_by_balance} by balance, {result.conflicts} conflicts"
        )
        return result

    # --------------------------------------------------------
    # SELL MATCH
    # --------------------------------------------------------

    def _sell_qualifies(self, buy: TradeRecord, sell: ExchangeOrder) -> bool:
        if sell.symbol != buy.symbol or sell.quantity <= 0:
            return False
        sold_at = sell.timestamp
        if sold_at is None or buy.created_at is None or sold_at <= buy.created_at:
            return False
        return abs(sell.quantity - buy.quantity) <= buy.quantity * self._tolerance.quantity_tolerance_pct

    async def close_by_sell_orders(
        self,
        exchange_orders: Sequence[ExchangeOrder],
        result: Optional[PositionCloseResult] = None,
    ) -> PositionCloseResult:
        """Close filled buys that a filled sell matches."""
        result = result or PositionCloseResult()

        sells = self.filled_sells(exchange_orders)
        if not sells:
            logger.debug("No filled sell orders to match")
            return result

        closed = await self._store.query_trades(
            self._user_id,
            side=TradeSide.BUY,
            statuses=[TradeStatus.CLOSED],
        )
        # Sells already booked against a buy in an earlier pass
        used: Set[str] = {b.closing_order_id for b in closed if b.closing_order_id}

        buys = await self._store.query_trades(
            self._user_id,
            side=TradeSide.BUY,
            statuses=[TradeStatus.FILLED],
        )

        for buy in sorted(buys, key=lambda b: b.created_at, reverse=True):
            candidates = [s for s in sells if s.order_id not in used and self._sell_qualifies(buy, s)]
            sell = pick_closest(
                candidates,
                quantity_of=lambda s: s.quantity,
                time_of=lambda s: s.timestamp,
                target_quantity=buy.quantity,
            )
            if sell is None:
                continue

            pnl = realized_pnl(buy, sell)
            if await self._close(buy, pnl, result, reason="sell_match", sell=sell):
                used.add(sell.order_id)
                result.closed_by_sell += 1

        return result

    # --------------------------------------------------------
    # ZERO BALANCE
    # --------------------------------------------------------

    async def close_by_zero_balance(
        self,
        result: Optional[PositionCloseResult] = None,
    ) -> PositionCloseResult:
        """Close filled buys whose base asset is gone from the wallet."""
        result = result or PositionCloseResult()

        try:
            balances = await self._gateway.get_account_balance()
        except GatewayError as e:
            logger.warning(f"Balance fetch failed, skipping zero-balance detection: {e}")
            return result
        result.balance_checked = True

        # Fresh read: the sell-match strategy may have closed some already
        buys = await self._store.query_trades(
            self._user_id,
            side=TradeSide.BUY,
            statuses=[TradeStatus.FILLED],
        )

        for buy in buys:
            asset = base_asset(buy.symbol, self._quote_assets)
            if asset is None:
                logger.debug(f"No known quote suffix on {buy.symbol}, skipping balance check")
                continue
            if balances.get(asset) > self._tolerance.balance_epsilon:
                continue
            if await self._close(buy, Decimal("0"), result, reason="zero_balance", asset=asset):
                result.closed_by_balance += 1

        return result

    # --------------------------------------------------------
    # WRITE
    # --------------------------------------------------------

    async def _close(
        self,
        buy: TradeRecord,
        pnl: Decimal,
        result: PositionCloseResult,
        reason: str,
        sell: Optional[ExchangeOrder] = None,
        asset: Optional[str] = None,
    ) -> bool:
        if not TransitionGuard.can_close_position(buy.status):
            return False

        try:
            applied = await self._store.conditional_update(
                buy.id,
                TradeStatus.FILLED,
                TradeUpdate(
                    status=TradeStatus.CLOSED,
                    profit_loss=pnl,
                    closing_order_id=sell.order_id if sell is not None else None,
                ),
            )
        except LedgerError as e:
            result.errors += 1
            await self._events.log(
                EventType.RECORD_ERROR,
                f"Failed to close {buy.symbol} position {buy.id}: {e}",
                {"trade_id": buy.id, "reason": reason},
            )
            return False

        if not applied:
            result.conflicts += 1
            await self._events.log(
                EventType.CONFLICT,
                f"Position {buy.id} no longer filled, close skipped",
                {"trade_id": buy.id, "reason": reason},
            )
            return False

        payload = {
            "trade_id": buy.id,
            "symbol": buy.symbol,
            "reason": reason,
            "profit_loss": pnl,
            "buy_price": buy.entry_price,
            "buy_order_id": buy.external_order_id,
        }
        if sell is not None:
            payload.update({
                "sell_order_id": sell.order_id,
                "sell_price": sell.executed_price,
                "quantity": sell.executed_quantity if sell.executed_quantity > 0 else sell.quantity,
            })
        if asset is not None:
            payload["base_asset"] = asset

        await self._events.log(
            EventType.POSITION_CLOSED,
            f"Closed {buy.symbol} position ({reason}) with P&L {pnl}",
            payload,
        )
        return True

    @staticmethod
    def filled_sells(orders: Sequence[ExchangeOrder]) -> List[ExchangeOrder]:
        """Filled sell orders from a snapshot."""
        return [o for o in orders if o.side == TradeSide.SELL and o.is_trade]
