"""
Exchange Gateway Tests.

============================================================
PURPOSE
============================================================
Unit tests for the gateway boundary.

TEST CATEGORIES:
- Payload parsing: Bybit V5 JSON -> ExchangeOrder
- Response checking: retCode on every response
- Bybit gateway: pagination, order formatting, transport errors
- Logging: credential masking
- Instrument cache: TTL and eviction
- Mock gateway: scripting and error injection

============================================================
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from reconciliation_engine.clock import MockClock
from reconciliation_engine.config import ExchangeConfig
from reconciliation_engine.errors import (
    DataIntegrityError,
    InsufficientBalanceError,
    InvalidParameterError,
    NetworkError,
    RateLimitError,
    UnknownGatewayError,
)
from reconciliation_engine.gateway.base import (
    check_response,
    map_order_status,
    parse_balances,
    parse_order,
    parse_orders,
)
from reconciliation_engine.gateway.bybit import BybitGateway, mask_headers, mask_value
from reconciliation_engine.gateway.instrument_cache import InstrumentCache, InstrumentInfo
from reconciliation_engine.gateway.mock import MockExchangeGateway, MockGatewayConfig
from reconciliation_engine.types import (
    ExchangeOrderStatus,
    OrderKind,
    PlaceOrderRequest,
    TradeSide,
)

from .factories import make_order


def _payload(**overrides):
    payload = {
        "orderId": "X1",
        "symbol": "BTCUSDT",
        "side": "Buy",
        "orderStatus": "Filled",
        "orderType": "Limit",
        "qty": "0.01",
        "price": "50000",
        "cumExecQty": "0.01",
        "avgPrice": "49990.5",
        "createdTime": "1768478400000",
        "updatedTime": "1768478460000",
    }
    payload.update(overrides)
    return payload


def _info(symbol="BTCUSDT"):
    return InstrumentInfo(
        symbol=symbol,
        base_coin="BTC",
        quote_coin="USDT",
        base_precision=Decimal("0.000001"),
        tick_size=Decimal("0.01"),
        min_order_qty=Decimal("0.000048"),
    )


# ============================================================
# PAYLOAD PARSING
# ============================================================

class TestParseOrder:
    """Tests for parse_order."""

    def test_filled_order(self):
        order = parse_order(_payload())

        assert order.order_id == "X1"
        assert order.side == TradeSide.BUY
        assert order.status == ExchangeOrderStatus.FILLED
        assert order.quantity == Decimal("0.01")
        assert order.average_price == Decimal("49990.5")
        assert order.executed_price == Decimal("49990.5")
        assert order.order_type == OrderKind.LIMIT
        assert order.created_time.tzinfo is not None
        assert order.timestamp == order.updated_time
        assert order.is_trade

    def test_zero_avg_price_is_none(self):
        order = parse_order(_payload(orderStatus="New", avgPrice="0", cumExecQty="0"))

        assert order.average_price is None
        assert order.executed_price == Decimal("50000")
        assert not order.is_trade

    def test_market_order(self):
        order = parse_order(_payload(orderType="Market", price="0"))

        assert order.order_type == OrderKind.MARKET
        assert order.executed_price == Decimal("49990.5")

    @pytest.mark.parametrize("raw,expected", [
        ("Created", ExchangeOrderStatus.NEW),
        ("Untriggered", ExchangeOrderStatus.UNTRIGGERED),
        ("PartiallyFilled", ExchangeOrderStatus.PARTIALLY_FILLED),
        ("PartiallyFilledCanceled", ExchangeOrderStatus.CANCELLED),
        ("Cancelled", ExchangeOrderStatus.CANCELLED),
        ("Rejected", ExchangeOrderStatus.REJECTED),
        ("Deactivated", ExchangeOrderStatus.DEACTIVATED),
    ])
    def test_status_mapping(self, raw, expected):
        assert map_order_status(raw) == expected

    def test_unknown_status_raises(self):
        with pytest.raises(DataIntegrityError):
            map_order_status("Exploded")

    def test_missing_fields_raise(self):
        with pytest.raises(DataIntegrityError):
            parse_order(_payload(orderId=""))

    def test_invalid_decimal_raises(self):
        with pytest.raises(DataIntegrityError):
            parse_order(_payload(qty="abc"))

    def test_parse_orders_skips_malformed(self):
        orders = parse_orders([_payload(), _payload(orderId="X2", side="Hold"), _payload(orderId="X3")])

        assert [o.order_id for o in orders] == ["X1", "X3"]

    def test_parse_balances_sums_accounts(self):
        balances = parse_balances({
            "list": [
                {"coin": [{"coin": "BTC", "walletBalance": "0.5"}, {"coin": "USDT", "walletBalance": "100"}]},
                {"coin": [{"coin": "BTC", "walletBalance": "0.25"}]},
            ]
        })

        assert balances.get("BTC") == Decimal("0.75")
        assert balances.get("USDT") == Decimal("100")
        assert balances.get("ETH") == Decimal("0")


class TestCheckResponse:
    """retCode is checked on every response."""

    def test_success_returns_result(self):
        assert check_response({"retCode": 0, "result": {"list": []}}) == {"list": []}

    def test_http_200_with_error_code_raises(self):
        with pytest.raises(InsufficientBalanceError):
            check_response({"retCode": 110007, "retMsg": "ab not enough"}, http_status=200)

    def test_rate_limit_code(self):
        with pytest.raises(RateLimitError):
            check_response({"retCode": 10006, "retMsg": "Too many visits"}, http_status=200)

    def test_missing_ret_code(self):
        with pytest.raises(UnknownGatewayError):
            check_response({"foo": "bar"}, http_status=200)


# ============================================================
# BYBIT GATEWAY
# ============================================================

class TestBybitGateway:
    """Tests for BybitGateway with the HTTP layer mocked."""

    def _gateway(self, session=None):
        cache = InstrumentCache(clock=MockClock())
        cache.put(_info())
        config = ExchangeConfig(api_key="key123456", api_secret="secret", testnet=True)
        return BybitGateway(config, cache, session=session or MagicMock())

    def test_signature_is_hex_sha256(self):
        gateway = self._gateway()

        signature = gateway._sign("1700000000000", "category=spot")

        assert len(signature) == 64
        assert signature == gateway._sign("1700000000000", "category=spot")
        assert signature != gateway._sign("1700000000001", "category=spot")

    @pytest.mark.asyncio
    async def test_history_walks_cursor(self):
        gateway = self._gateway()
        gateway._request = AsyncMock(side_effect=[
            {"list": [_payload(orderId="X1")], "nextPageCursor": "c1"},
            {"list": [_payload(orderId="X2")], "nextPageCursor": ""},
        ])

        orders = await gateway.get_order_history(limit=100)

        assert [o.order_id for o in orders] == ["X1", "X2"]
        second_params = gateway._request.await_args_list[1].args[2]
        assert second_params["cursor"] == "c1"

    @pytest.mark.asyncio
    async def test_history_page_size_capped_at_50(self):
        gateway = self._gateway()
        gateway._request = AsyncMock(return_value={"list": [], "nextPageCursor": ""})

        await gateway.get_order_history(limit=200)

        params = gateway._request.await_args.args[2]
        assert params["limit"] == 50

    @pytest.mark.asyncio
    async def test_place_limit_order_formats_quantity_and_price(self):
        gateway = self._gateway()
        gateway._request = AsyncMock(return_value={"orderId": "NEW1"})

        result = await gateway.place_order(PlaceOrderRequest(
            symbol="BTCUSDT",
            side=TradeSide.BUY,
            quantity=Decimal("0.0123456789"),
            price=Decimal("50000.129"),
        ))

        body = gateway._request.await_args.kwargs["body"]
        assert body["qty"] == "0.012345"
        assert body["price"] == "50000.12"
        assert body["side"] == "Buy"
        assert body["orderType"] == "Limit"
        assert result.order_id == "NEW1"
        assert result.quantity == Decimal("0.012345")

    @pytest.mark.asyncio
    async def test_place_order_below_minimum_rejected(self):
        gateway = self._gateway()
        gateway._request = AsyncMock()

        with pytest.raises(InvalidParameterError):
            await gateway.place_order(PlaceOrderRequest(
                symbol="BTCUSDT",
                side=TradeSide.BUY,
                quantity=Decimal("0.00001"),
                price=Decimal("50000"),
            ))
        gateway._request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_market_price(self):
        gateway = self._gateway()
        gateway._request = AsyncMock(return_value={"list": [{"lastPrice": "51234.5"}]})

        assert await gateway.get_market_price("BTCUSDT") == Decimal("51234.5")

    @pytest.mark.asyncio
    async def test_handle_response_checks_ret_code(self):
        gateway = self._gateway()
        response = MagicMock()
        response.status = 200
        response.json = AsyncMock(return_value={"retCode": 10006, "retMsg": "Too many visits"})

        with pytest.raises(RateLimitError):
            await gateway._handle_response(response, "/v5/order/history", 0.0)

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_error(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        gateway = self._gateway(session)

        with pytest.raises(NetworkError):
            await gateway.get_active_orders()

    @pytest.mark.asyncio
    async def test_instrument_served_from_cache(self):
        gateway = self._gateway()
        gateway._request = AsyncMock()

        info = await gateway.get_instrument("BTCUSDT")

        assert info.base_coin == "BTC"
        gateway._request.assert_not_awaited()


class TestCredentialMasking:
    """Credentials never reach the logs."""

    def test_mask_value(self):
        assert mask_value("abcdefgh") == "abcd...***"
        assert mask_value("abc") == "***"

    def test_mask_headers(self):
        masked = mask_headers({
            "X-BAPI-API-KEY": "key123456",
            "X-BAPI-SIGN": "deadbeefcafe",
            "X-BAPI-TIMESTAMP": "1700000000000",
        })

        assert "key123456" not in masked.values()
        assert "deadbeefcafe" not in masked.values()
        assert masked["X-BAPI-TIMESTAMP"] == "1700000000000"


# ============================================================
# INSTRUMENT CACHE
# ============================================================

class TestInstrumentCache:
    """Tests for InstrumentCache."""

    def test_get_put(self):
        cache = InstrumentCache(clock=MockClock())
        cache.put(_info())

        assert cache.get("BTCUSDT").tick_size == Decimal("0.01")
        assert cache.get("ETHUSDT") is None

    def test_ttl_expiry(self):
        clock = MockClock()
        cache = InstrumentCache(ttl_seconds=60, clock=clock)
        cache.put(_info())

        clock.advance(60)
        assert cache.get("BTCUSDT") is not None

        clock.advance(1)
        assert cache.get("BTCUSDT") is None
        assert len(cache) == 0

    def test_evicts_oldest_ten_percent(self):
        clock = MockClock()
        cache = InstrumentCache(max_size=20, clock=clock)
        for i in range(20):
            cache.put(_info(f"SYM{i}USDT"))
            clock.advance(1)

        cache.put(_info("NEWUSDT"))

        assert len(cache) == 19
        assert cache.get("SYM0USDT") is None
        assert cache.get("SYM1USDT") is None
        assert cache.get("SYM2USDT") is not None
        assert cache.get("NEWUSDT") is not None

    def test_cleanup_expired(self):
        clock = MockClock()
        cache = InstrumentCache(ttl_seconds=10, clock=clock)
        cache.put(_info("AUSDT"))
        clock.advance(11)
        cache.put(_info("BUSDT"))

        assert cache.stats() == {"size": 2, "expired": 1}
        assert cache.cleanup_expired() == 1
        assert len(cache) == 1

    def test_format_rounds_down(self):
        info = _info()

        assert info.format_quantity(Decimal("0.0000019")) == Decimal("0.000001")
        assert info.format_price(Decimal("100.019")) == Decimal("100.01")


# ============================================================
# MOCK GATEWAY
# ============================================================

class TestMockGateway:
    """Tests for MockExchangeGateway."""

    @pytest.mark.asyncio
    async def test_open_orders_are_active(self):
        gateway = MockExchangeGateway()
        gateway.add_order(make_order("X1", status=ExchangeOrderStatus.NEW))
        gateway.add_order(make_order("X2"))

        active = await gateway.get_active_orders()
        history = await gateway.get_order_history()

        assert [o.order_id for o in active] == ["X1"]
        assert [o.order_id for o in history] == ["X1", "X2"]

    @pytest.mark.asyncio
    async def test_market_order_fills(self):
        gateway = MockExchangeGateway(MockGatewayConfig(default_price=Decimal("100")))

        result = await gateway.place_order(PlaceOrderRequest(
            "SOLUSDT", TradeSide.BUY, Decimal("2"), order_type=OrderKind.MARKET
        ))

        history = await gateway.get_order_history()
        assert history[0].order_id == result.order_id
        assert history[0].status == ExchangeOrderStatus.FILLED
        assert history[0].average_price == Decimal("100")

    @pytest.mark.asyncio
    async def test_fail_next(self):
        gateway = MockExchangeGateway()
        gateway.fail_next("get_account_balance", NetworkError("down"))

        with pytest.raises(NetworkError):
            await gateway.get_account_balance()
        assert (await gateway.get_account_balance()).balances == {}
        assert gateway.calls["get_account_balance"] == 2
