"""
Reconciliation Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions shared by the reconciliation core.

- Ledger side: TradeRecord, TradeUpdate, TradeStatus
- Exchange side: ExchangeOrder (tagged by ExchangeOrderStatus)
- Account side: AccountBalances
- Order placement: PlaceOrderRequest, PlaceOrderResult

CRITICAL PRINCIPLE:
    "Exchange payloads are parsed into these types at the gateway
    boundary. Nothing downstream reads raw JSON."

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional


# ============================================================
# LEDGER ENUMS
# ============================================================

class TradeSide(Enum):
    """Trade side, as stored in the ledger."""

    BUY = "buy"
    SELL = "sell"

    @classmethod
    def from_exchange(cls, value: str) -> "TradeSide":
        """Map exchange side strings ("Buy", "SELL", ...) to TradeSide."""
        return cls(value.strip().lower())


class OrderKind(Enum):
    """Ledger order type."""

    MARKET = "market"
    LIMIT = "limit"


class TradeStatus(Enum):
    """
    Ledger lifecycle status of a trade record.

    State Machine (buy-side positions):

        pending ──► filled ──► closed
           │  │       ▲ │
           │  │       │ ▼
           │  └──► partial_filled ──► closed
           ▼
        cancelled

    cancelled and closed are terminal.
    """

    PENDING = "pending"
    """Placed, nothing executed yet."""

    PARTIAL_FILLED = "partial_filled"
    """Partially executed."""

    FILLED = "filled"
    """Fully executed; for buys, an open position."""

    CANCELLED = "cancelled"
    """Cancelled before any position existed."""

    CLOSED = "closed"
    """Position resolved (sold, or order terminated on the exchange)."""

    def is_terminal(self) -> bool:
        """Check if status is terminal."""
        return self in (TradeStatus.CANCELLED, TradeStatus.CLOSED)

    def is_live(self) -> bool:
        """Check if the record still describes an open order or position."""
        return not self.is_terminal()


# ============================================================
# EXCHANGE ENUMS
# ============================================================

class ExchangeOrderStatus(Enum):
    """
    Exchange-reported order status (Bybit V5 spelling).

    This is the discriminator of ExchangeOrder records.
    """

    NEW = "New"
    UNTRIGGERED = "Untriggered"
    PARTIALLY_FILLED = "PartiallyFilled"
    FILLED = "Filled"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"
    DEACTIVATED = "Deactivated"

    @property
    def is_open(self) -> bool:
        """Order is resting or partially executed on the exchange."""
        return self in (
            ExchangeOrderStatus.NEW,
            ExchangeOrderStatus.UNTRIGGERED,
            ExchangeOrderStatus.PARTIALLY_FILLED,
        )

    @property
    def is_terminated(self) -> bool:
        """Order ended on the exchange without (full) execution."""
        return self in (
            ExchangeOrderStatus.CANCELLED,
            ExchangeOrderStatus.REJECTED,
            ExchangeOrderStatus.DEACTIVATED,
        )

    @property
    def is_importable(self) -> bool:
        """Whether an unknown order with this status should be imported."""
        return not self.is_terminated

    def to_trade_status(self) -> TradeStatus:
        """Map 1:1 onto the ledger status."""
        if self == ExchangeOrderStatus.PARTIALLY_FILLED:
            return TradeStatus.PARTIAL_FILLED
        if self == ExchangeOrderStatus.FILLED:
            return TradeStatus.FILLED
        if self.is_terminated:
            return TradeStatus.CLOSED
        return TradeStatus.PENDING


# ============================================================
# MISMATCH CLASSIFICATION
# ============================================================

class MismatchType(Enum):
    """Types of reconciliation mismatches."""

    MISSING_FROM_LOCAL = "MISSING_FROM_LOCAL"
    """Execution on exchange but no local record."""

    EXTRA_IN_LOCAL = "EXTRA_IN_LOCAL"
    """Local record with no exchange counterpart."""

    STATUS_MISMATCH = "STATUS_MISMATCH"
    """Local status differs from exchange-derived status."""

    PRICE_MISMATCH = "PRICE_MISMATCH"
    """Local price differs from execution price."""


class MismatchSeverity(Enum):
    """Severity of a mismatch or recommendation."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


# ============================================================
# LEDGER RECORDS
# ============================================================

@dataclass
class TradeRecord:
    """
    One row of the trade ledger.

    Owned by the Ledger Store. Mutated only through conditional
    updates issued by the orchestrator or the position-close detector.
    """

    user_id: str
    """Owner of the record."""

    symbol: str
    """Exchange symbol, canonical uppercase (e.g. BTCUSDT)."""

    side: TradeSide
    """Buy or sell."""

    quantity: Decimal
    """Ordered quantity (positive)."""

    price: Decimal
    """Requested price (positive)."""

    status: TradeStatus = TradeStatus.PENDING
    """Lifecycle status."""

    order_type: OrderKind = OrderKind.LIMIT
    """Market or limit."""

    id: Optional[str] = None
    """Internal id, assigned by the store on insert."""

    external_order_id: Optional[str] = None
    """Exchange order id, null until confirmed."""

    external_trade_id: Optional[str] = None
    """Exchange execution id."""

    closing_order_id: Optional[str] = None
    """Exchange sell order that closed this buy (sell-match closes only)."""

    buy_fill_price: Optional[Decimal] = None
    """Actual executed price for buys."""

    profit_loss: Optional[Decimal] = None
    """Realized P&L, only meaningful once terminal."""

    created_at: Optional[datetime] = None
    """Creation time (UTC)."""

    updated_at: Optional[datetime] = None
    """Last update time (UTC)."""

    @property
    def entry_price(self) -> Decimal:
        """Fill price, falling back to the requested price."""
        return self.buy_fill_price if self.buy_fill_price else self.price

    def to_log_dict(self) -> Dict[str, Optional[str]]:
        """Compact dictionary for structured log payloads."""
        return {
            "trade_id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "status": self.status.value,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "external_order_id": self.external_order_id,
        }


@dataclass
class TradeUpdate:
    """
    Partial update for a trade record.

    Only fields that are not None are written. `updated_at` is always
    set by the store.
    """

    status: Optional[TradeStatus] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    buy_fill_price: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    external_order_id: Optional[str] = None
    external_trade_id: Optional[str] = None
    closing_order_id: Optional[str] = None

    def changes(self) -> Dict[str, object]:
        """Non-empty fields as a column -> value mapping."""
        values: Dict[str, object] = {}
        for name in (
            "quantity",
            "price",
            "buy_fill_price",
            "profit_loss",
            "external_order_id",
            "external_trade_id",
            "closing_order_id",
        ):
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        if self.status is not None:
            values["status"] = self.status.value
        return values

    def is_empty(self) -> bool:
        """Whether there is nothing to write."""
        return not self.changes()


# ============================================================
# EXCHANGE RECORDS
# ============================================================

@dataclass(frozen=True)
class ExchangeOrder:
    """
    Point-in-time snapshot of one exchange order.

    Read-only. Built by the gateway from the exchange's JSON.
    """

    order_id: str
    """Exchange-assigned order id."""

    symbol: str
    """Exchange symbol."""

    side: TradeSide
    """Buy or sell."""

    status: ExchangeOrderStatus
    """Exchange-reported status."""

    quantity: Decimal
    """Ordered quantity."""

    price: Decimal = Decimal("0")
    """Order price (0 for market orders)."""

    executed_quantity: Decimal = Decimal("0")
    """Cumulative executed quantity."""

    average_price: Optional[Decimal] = None
    """Average execution price, when known."""

    order_type: OrderKind = OrderKind.LIMIT
    """Market or limit."""

    created_time: Optional[datetime] = None
    """Order creation time (UTC)."""

    updated_time: Optional[datetime] = None
    """Last update time (UTC)."""

    execution_id: Optional[str] = None
    """Execution/trade id, when the payload carries one."""

    @property
    def executed_price(self) -> Decimal:
        """Average execution price, falling back to order price."""
        return self.average_price if self.average_price else self.price

    @property
    def timestamp(self) -> Optional[datetime]:
        """Execution/update timestamp, falling back to creation time."""
        return self.updated_time or self.created_time

    @property
    def is_trade(self) -> bool:
        """Whether the order has fully executed."""
        return self.status == ExchangeOrderStatus.FILLED

    def to_log_dict(self) -> Dict[str, Optional[str]]:
        """Compact dictionary for structured log payloads."""
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "status": self.status.value,
            "quantity": str(self.quantity),
            "price": str(self.executed_price),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class AccountBalances:
    """Wallet balances by coin."""

    balances: Dict[str, Decimal] = field(default_factory=dict)
    """Coin -> wallet balance."""

    def get(self, coin: str) -> Decimal:
        """Balance for coin; a missing coin counts as zero."""
        return self.balances.get(coin, Decimal("0"))


# ============================================================
# ORDER PLACEMENT
# ============================================================

@dataclass
class PlaceOrderRequest:
    """Request to place an order on the exchange."""

    symbol: str
    side: TradeSide
    quantity: Decimal
    order_type: OrderKind = OrderKind.LIMIT
    price: Optional[Decimal] = None
    time_in_force: str = "GTC"


@dataclass
class PlaceOrderResult:
    """Exchange acknowledgement of a placed order."""

    order_id: str
    """Exchange order id."""

    symbol: str
    side: TradeSide
    quantity: Decimal
    price: Optional[Decimal] = None
