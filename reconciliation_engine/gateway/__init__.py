"""
Reconciliation Engine - Exchange Gateways.

Gateway interface, payload parsing, and implementations:
- BybitGateway: Bybit V5 over aiohttp
- ResilientGateway: retry + circuit breaker decorator
- MockExchangeGateway: in-memory, for tests
"""

from .base import (
    ExchangeGateway,
    check_response,
    map_order_status,
    parse_balances,
    parse_order,
    parse_orders,
)
from .bybit import BybitGateway
from .instrument_cache import InstrumentCache, InstrumentInfo
from .mock import MockExchangeGateway, MockGatewayConfig
from .resilient import ResilientGateway


__all__ = [
    "ExchangeGateway",
    "check_response",
    "map_order_status",
    "parse_balances",
    "parse_order",
    "parse_orders",
    "BybitGateway",
    "InstrumentCache",
    "InstrumentInfo",
    "MockExchangeGateway",
    "MockGatewayConfig",
    "ResilientGateway",
]
