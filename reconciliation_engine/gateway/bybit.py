"""
Bybit Exchange Gateway.

============================================================
PURPOSE
============================================================
Exchange gateway for the Bybit V5 Unified API.

EXCHANGE SPECIFICS:
- HMAC-SHA256 signing
- Symbol format: BTCUSDT
- Category-based endpoints (spot by default)
- retCode is checked on EVERY response, whatever the HTTP status

============================================================
API DOCUMENTATION
============================================================
https://bybit-exchange.github.io/docs/v5/intro

============================================================
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import ExchangeConfig
from ..errors import DataIntegrityError, InvalidParameterError, NetworkError
from ..types import (
    AccountBalances,
    ExchangeOrder,
    OrderKind,
    PlaceOrderRequest,
    PlaceOrderResult,
    TradeSide,
)
from .base import ExchangeGateway, check_response, parse_balances, parse_orders
from .instrument_cache import InstrumentCache, InstrumentInfo


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BYBIT_REST_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"

BYBIT_SIDE = {TradeSide.BUY: "Buy", TradeSide.SELL: "Sell"}
BYBIT_ORDER_TYPE = {OrderKind.MARKET: "Market", OrderKind.LIMIT: "Limit"}

# Header names that must never reach the logs in clear
SENSITIVE_HEADERS = {"x-bapi-api-key", "x-bapi-sign"}


def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, showing only the first few chars."""
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of headers with credentials masked."""
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


# ============================================================
# BYBIT GATEWAY
# ============================================================

class BybitGateway(ExchangeGateway):
    """
    Bybit V5 gateway.

    One aiohttp session per gateway, bounded by a total request timeout.
    """

    def __init__(
        self,
        config: Optional[ExchangeConfig] = None,
        instrument_cache: Optional[InstrumentCache] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or ExchangeConfig()
        self._base_url = BYBIT_TESTNET_URL if self._config.testnet else BYBIT_REST_URL
        self._instruments = instrument_cache or InstrumentCache(
            ttl_seconds=self._config.instrument_cache_ttl_seconds,
            max_size=self._config.instrument_cache_max_size,
        )
        self._session = session
        self._owns_session = session is None

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def exchange_id(self) -> str:
        return "bybit"

    @property
    def instrument_cache(self) -> InstrumentCache:
        return self._instruments

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Create the HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
            logger.info(f"Bybit gateway session opened ({'testnet' if self._config.testnet else 'mainnet'})")

    async def disconnect(self) -> None:
        """Close the HTTP session if we created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            logger.info("Bybit gateway session closed")
        self._session = None

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _sign(self, timestamp: str, payload: str) -> str:
        """
        Bybit V5 signature: HMAC-SHA256(timestamp + api_key + recv_window + payload).
        """
        message = f"{timestamp}{self._config.api_key}{self._config.recv_window}{payload}"
        return hmac.new(
            self._config.api_secret.encode(),
            message.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _headers(self, payload: str) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json",
            "X-BAPI-API-KEY": self._config.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-SIGN": self._sign(timestamp, payload),
            "X-BAPI-RECV-WINDOW": str(self._config.recv_window),
        }

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make a signed request and return the V5 `result` object.

        Raises:
            GatewayError: mapped from transport failures or retCode
        """
        if self._session is None:
            await self.connect()

        if method == "GET":
            payload = "&".join(f"{k}={v}" for k, v in (params or {}).items())
            url = f"{self._base_url}{endpoint}" + (f"?{payload}" if payload else "")
        else:
            payload = json.dumps(body or {})
            url = f"{self._base_url}{endpoint}"

        headers = self._headers(payload)
        logger.debug(f"Bybit {method} {endpoint} params={params} body={body} headers={mask_headers(headers)}")

        start_time = time.monotonic()
        try:
            if method == "GET":
                async with self._session.get(url, headers=headers) as resp:
                    return await self._handle_response(resp, endpoint, start_time)
            async with self._session.post(url, headers=headers, data=payload) as resp:
                return await self._handle_response(resp, endpoint, start_time)
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error: {e}", endpoint=endpoint)
        except asyncio.TimeoutError:
            raise NetworkError(
                f"Request timed out after {self._config.timeout_seconds}s",
                endpoint=endpoint,
            )

    async def _handle_response(
        self,
        response: aiohttp.ClientResponse,
        endpoint: str,
        start_time: float,
    ) -> Dict[str, Any]:
        latency_ms = (time.monotonic() - start_time) * 1000
        try:
            data = await response.json(content_type=None)
        except (json.JSONDecodeError, aiohttp.ContentTypeError):
            data = {"retCode": -1, "retMsg": await response.text()}
        if not isinstance(data, dict):
            data = {"retCode": -1, "retMsg": f"Unexpected response body: {data!r}"}

        logger.debug(
            f"Bybit {endpoint} -> HTTP {response.status} retCode={data.get('retCode')} "
            f"({latency_ms:.0f}ms)"
        )
        return check_response(data, http_status=response.status, endpoint=endpoint)

    # --------------------------------------------------------
    # INSTRUMENTS
    # --------------------------------------------------------

    async def get_instrument(self, symbol: str) -> InstrumentInfo:
        """Instrument precision, served from the cache when fresh."""
        cached = self._instruments.get(symbol)
        if cached is not None:
            return cached

        data = await self._request(
            "GET",
            "/v5/market/instruments-info",
            {"category": self._config.category, "symbol": symbol},
        )
        instruments = data.get("list", [])
        if not instruments:
            raise InvalidParameterError(f"Unknown symbol {symbol}", endpoint="/v5/market/instruments-info")

        inst = instruments[0]
        lot_filter = inst.get("lotSizeFilter", {})
        price_filter = inst.get("priceFilter", {})
        info = InstrumentInfo(
            symbol=symbol,
            base_coin=inst.get("baseCoin", ""),
            quote_coin=inst.get("quoteCoin", ""),
            base_precision=Decimal(lot_filter.get("basePrecision") or lot_filter.get("qtyStep") or "0.0001"),
            tick_size=Decimal(price_filter.get("tickSize") or "0.01"),
            min_order_qty=Decimal(lot_filter.get("minOrderQty") or "0"),
        )
        self._instruments.put(info)
        logger.info(f"Cached instrument info for {symbol}")
        return info

    # --------------------------------------------------------
    # GATEWAY OPERATIONS
    # --------------------------------------------------------

    async def get_market_price(self, symbol: str) -> Decimal:
        data = await self._request(
            "GET",
            "/v5/market/tickers",
            {"category": self._config.category, "symbol": symbol},
        )
        tickers = data.get("list", [])
        if not tickers or not tickers[0].get("lastPrice"):
            raise DataIntegrityError(f"No ticker price for {symbol}", payload=data)
        return Decimal(tickers[0]["lastPrice"])

    async def place_order(self, request: PlaceOrderRequest) -> PlaceOrderResult:
        info = await self.get_instrument(request.symbol)
        quantity = info.format_quantity(request.quantity)
        if quantity <= 0 or quantity < info.min_order_qty:
            raise InvalidParameterError(
                f"Quantity {request.quantity} below minimum for {request.symbol}",
                endpoint="/v5/order/create",
            )

        body: Dict[str, Any] = {
            "category": self._config.category,
            "symbol": request.symbol,
            "side": BYBIT_SIDE[request.side],
            "orderType": BYBIT_ORDER_TYPE[request.order_type],
            "qty": str(quantity),
        }
        price = None
        if request.order_type == OrderKind.LIMIT:
            if request.price is None:
                raise InvalidParameterError("Limit order requires a price", endpoint="/v5/order/create")
            price = info.format_price(request.price)
            body["price"] = str(price)
            body["timeInForce"] = request.time_in_force

        data = await self._request("POST", "/v5/order/create", body=body)
        order_id = data.get("orderId")
        if not order_id:
            raise DataIntegrityError("Order create response without orderId", payload=data)

        logger.info(
            f"Placed {request.side.value} {request.order_type.value} order {order_id}: "
            f"{quantity} {request.symbol} @ {price if price is not None else 'market'}"
        )
        return PlaceOrderResult(
            order_id=str(order_id),
            symbol=request.symbol,
            side=request.side,
            quantity=quantity,
            price=price,
        )

    async def get_order_history(self, limit: int = 200) -> List[ExchangeOrder]:
        # V5 caps a page at 50; walk the cursor until `limit` is reached
        orders: List[Dict[str, Any]] = []
        cursor = ""
        while len(orders) < limit:
            params: Dict[str, Any] = {
                "category": self._config.category,
                "limit": min(50, limit - len(orders)),
            }
            if cursor:
                params["cursor"] = cursor
            data = await self._request("GET", "/v5/order/history", params)
            page = data.get("list", [])
            orders.extend(page)
            cursor = data.get("nextPageCursor") or ""
            if not page or not cursor:
                break
        return parse_orders(orders)

    async def get_active_orders(self) -> List[ExchangeOrder]:
        data = await self._request(
            "GET",
            "/v5/order/realtime",
            {"category": self._config.category},
        )
        return parse_orders(data.get("list", []))

    async def get_account_balance(self) -> AccountBalances:
        data = await self._request(
            "GET",
            "/v5/account/wallet-balance",
            {"accountType": "UNIFIED"},
        )
        return parse_balances(data)
