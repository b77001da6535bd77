"""
Reconciliation Engine - Exchange Gateway Base.

============================================================
PURPOSE
============================================================
Abstract interface for the exchange side of reconciliation, and
the boundary parser that turns exchange JSON into ExchangeOrder.

DESIGN PRINCIPLES:
- Exchange-agnostic interface
- Raw payloads never leave the gateway
- Fully testable with the mock gateway

============================================================
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from ..clock import from_millis
from ..errors import DataIntegrityError, map_bybit_error
from ..types import (
    AccountBalances,
    ExchangeOrder,
    ExchangeOrderStatus,
    OrderKind,
    PlaceOrderRequest,
    PlaceOrderResult,
    TradeSide,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATUS MAPPING
# ============================================================

# Bybit V5 spellings that are not ExchangeOrderStatus values
BYBIT_STATUS_ALIASES: Dict[str, ExchangeOrderStatus] = {
    "Created": ExchangeOrderStatus.NEW,
    "Active": ExchangeOrderStatus.NEW,
    "Triggered": ExchangeOrderStatus.NEW,
    "PartiallyFilledCanceled": ExchangeOrderStatus.CANCELLED,
    "Canceled": ExchangeOrderStatus.CANCELLED,
}


def map_order_status(status: str) -> ExchangeOrderStatus:
    """
    Map an exchange status string to ExchangeOrderStatus.

    Raises:
        DataIntegrityError: for unknown statuses
    """
    if status in BYBIT_STATUS_ALIASES:
        return BYBIT_STATUS_ALIASES[status]
    try:
        return ExchangeOrderStatus(status)
    except ValueError:
        raise DataIntegrityError(f"Unknown order status: {status!r}")


def _decimal(payload: Dict[str, Any], key: str, default: str = "0") -> Decimal:
    raw = payload.get(key)
    if raw in (None, ""):
        raw = default
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise DataIntegrityError(f"Invalid decimal in field {key!r}: {raw!r}")


# ============================================================
# PAYLOAD PARSING
# ============================================================

def parse_order(payload: Dict[str, Any]) -> ExchangeOrder:
    """
    Build an ExchangeOrder from a Bybit V5 order payload.

    Raises:
        DataIntegrityError: if the payload is malformed
    """
    order_id = payload.get("orderId")
    symbol = payload.get("symbol")
    side = payload.get("side")
    status = payload.get("orderStatus")
    if not order_id or not symbol or not side or not status:
        raise DataIntegrityError("Order payload missing required fields", payload=payload)

    try:
        trade_side = TradeSide.from_exchange(side)
    except ValueError:
        raise DataIntegrityError(f"Unknown order side: {side!r}", payload=payload)

    average_price = _decimal(payload, "avgPrice")
    order_type = OrderKind.MARKET if str(payload.get("orderType", "")).lower() == "market" else OrderKind.LIMIT

    try:
        created_time = from_millis(payload.get("createdTime"))
        updated_time = from_millis(payload.get("updatedTime"))
    except (TypeError, ValueError):
        raise DataIntegrityError("Invalid order timestamps", payload=payload)

    return ExchangeOrder(
        order_id=str(order_id),
        symbol=str(symbol),
        side=trade_side,
        status=map_order_status(str(status)),
        quantity=_decimal(payload, "qty"),
        price=_decimal(payload, "price"),
        executed_quantity=_decimal(payload, "cumExecQty"),
        average_price=average_price if average_price > 0 else None,
        order_type=order_type,
        created_time=created_time,
        updated_time=updated_time,
        execution_id=payload.get("execId") or None,
    )


def parse_orders(payloads: Iterable[Dict[str, Any]]) -> List[ExchangeOrder]:
    """Parse a list of order payloads, skipping malformed ones."""
    orders: List[ExchangeOrder] = []
    for payload in payloads:
        try:
            orders.append(parse_order(payload))
        except DataIntegrityError as e:
            logger.warning(f"Skipping malformed order payload: {e} {payload}")
    return orders


def parse_balances(result: Dict[str, Any]) -> AccountBalances:
    """Build AccountBalances from a V5 wallet-balance result."""
    balances: Dict[str, Decimal] = {}
    for account in result.get("list", []):
        for coin in account.get("coin", []):
            name = coin.get("coin")
            if not name:
                continue
            balances[name] = balances.get(name, Decimal("0")) + _decimal(coin, "walletBalance")
    return AccountBalances(balances=balances)


def check_response(data: Dict[str, Any], http_status: Optional[int] = None, endpoint: Optional[str] = None) -> Dict[str, Any]:
    """
    Return the `result` of a V5 response, raising on a non-zero retCode.

    Checked on every response, whatever the HTTP status.
    """
    ret_code = data.get("retCode")
    if ret_code is None:
        raise map_bybit_error(-1, f"Response without retCode: {data}", http_status, endpoint)
    if int(ret_code) != 0:
        raise map_bybit_error(int(ret_code), str(data.get("retMsg", "")), http_status, endpoint)
    return data.get("result") or {}


# ============================================================
# GATEWAY INTERFACE
# ============================================================

class ExchangeGateway(ABC):
    """
    Exchange side of reconciliation.

    Every method raises GatewayError subclasses on failure.
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Exchange identifier."""
        pass

    async def connect(self) -> None:
        """Open network resources."""

    async def disconnect(self) -> None:
        """Release network resources."""

    @abstractmethod
    async def get_market_price(self, symbol: str) -> Decimal:
        """Last traded price for a symbol."""
        pass

    @abstractmethod
    async def place_order(self, request: PlaceOrderRequest) -> PlaceOrderResult:
        """Place an order."""
        pass

    @abstractmethod
    async def get_order_history(self, limit: int = 200) -> List[ExchangeOrder]:
        """Recent orders, any status."""
        pass

    @abstractmethod
    async def get_active_orders(self) -> List[ExchangeOrder]:
        """Currently open orders."""
        pass

    @abstractmethod
    async def get_account_balance(self) -> AccountBalances:
        """Wallet balances by coin."""
        pass

    async def __aenter__(self) -> "ExchangeGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()
