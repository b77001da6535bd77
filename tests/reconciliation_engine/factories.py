"""
Test data builders for reconciliation engine tests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from reconciliation_engine.ledger.store import LedgerStore
from reconciliation_engine.types import (
    ExchangeOrder,
    ExchangeOrderStatus,
    OrderKind,
    TradeRecord,
    TradeSide,
    TradeStatus,
    TradeUpdate,
)


NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
USER_ID = "test-user"


def make_order(
    order_id: str = "X1",
    symbol: str = "BTCUSDT",
    side: TradeSide = TradeSide.BUY,
    status: ExchangeOrderStatus = ExchangeOrderStatus.FILLED,
    quantity: str = "0.01",
    price: str = "50000",
    average_price: Optional[str] = None,
    executed_quantity: Optional[str] = None,
    order_type: OrderKind = OrderKind.LIMIT,
    at: Optional[datetime] = None,
) -> ExchangeOrder:
    """Exchange order; filled orders default to fully executed at `price`."""
    at = at or NOW - timedelta(hours=1)
    filled = status == ExchangeOrderStatus.FILLED
    if average_price is None and filled:
        average_price = price
    if executed_quantity is None:
        executed_quantity = quantity if filled else "0"
    return ExchangeOrder(
        order_id=order_id,
        symbol=symbol,
        side=side,
        status=status,
        quantity=Decimal(quantity),
        price=Decimal(price),
        executed_quantity=Decimal(executed_quantity),
        average_price=Decimal(average_price) if average_price is not None else None,
        order_type=order_type,
        created_time=at,
        updated_time=at,
    )


def make_record(
    trade_id: Optional[str] = None,
    symbol: str = "BTCUSDT",
    side: TradeSide = TradeSide.BUY,
    status: TradeStatus = TradeStatus.PENDING,
    quantity: str = "0.01",
    price: str = "50000",
    external_order_id: Optional[str] = None,
    buy_fill_price: Optional[str] = None,
    profit_loss: Optional[str] = None,
    created_at: Optional[datetime] = None,
    user_id: str = USER_ID,
) -> TradeRecord:
    created_at = created_at or NOW - timedelta(hours=2)
    return TradeRecord(
        id=trade_id,
        user_id=user_id,
        symbol=symbol,
        side=side,
        quantity=Decimal(quantity),
        price=Decimal(price),
        status=status,
        external_order_id=external_order_id,
        buy_fill_price=Decimal(buy_fill_price) if buy_fill_price is not None else None,
        profit_loss=Decimal(profit_loss) if profit_loss is not None else None,
        created_at=created_at,
        updated_at=created_at,
    )


class InMemoryLedgerStore(LedgerStore):
    """
    Dict-backed store without the unique external id constraint.

    Lets tests build ledger states the SQL store refuses, such as
    duplicate external order ids.
    """

    def __init__(self, records: Sequence[TradeRecord] = ()):
        self.records: Dict[str, TradeRecord] = {}
        for index, record in enumerate(records):
            trade_id = record.id or f"mem-{index}"
            record.id = trade_id
            self.records[trade_id] = record

    async def query_trades(
        self,
        user_id,
        symbol=None,
        statuses=None,
        side=None,
        created_from=None,
        created_to=None,
    ) -> List[TradeRecord]:
        statuses = set(statuses) if statuses is not None else None
        found = [
            r for r in self.records.values()
            if r.user_id == user_id
            and (symbol is None or r.symbol == symbol)
            and (statuses is None or r.status in statuses)
            and (side is None or r.side == side)
            and (created_from is None or r.created_at >= created_from)
            and (created_to is None or r.created_at <= created_to)
        ]
        return sorted(found, key=lambda r: r.created_at)

    async def find_by_external_order_ids(self, user_id, external_order_ids) -> List[TradeRecord]:
        wanted = set(external_order_ids)
        return [
            r for r in self.records.values()
            if r.user_id == user_id and r.external_order_id in wanted
        ]

    async def insert_trade(self, record: TradeRecord) -> Optional[TradeRecord]:
        record.id = record.id or f"mem-{len(self.records)}"
        self.records[record.id] = record
        return record

    async def conditional_update(self, trade_id, expected_status, update: TradeUpdate) -> bool:
        record = self.records.get(trade_id)
        if record is None or record.status != expected_status:
            return False
        for name, value in update.changes().items():
            if name == "status":
                value = TradeStatus(value)
            setattr(record, name, value)
        return True
